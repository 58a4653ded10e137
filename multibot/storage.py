"""
SQLAlchemy backed storage for memory entries and conversation contexts
"""
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from multibot.context import ContextBackend, ContextKey, ConversationContext
from multibot.errors import StorageFailure
from multibot.memory import MISSING, MemoryBackend, Namespace
from multibot.models import ConversationContextModel, MemoryEntryModel


LOGGER = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SQLAlchemyBackend:

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.Session = async_sessionmaker(bind=engine, expire_on_commit=False)

    @contextlib.asynccontextmanager
    async def session_ctx(self, operation: str, key: Any) -> AsyncIterator[AsyncSession]:
        try:
            async with self.Session() as session:
                yield session
        except SQLAlchemyError as err:
            LOGGER.error("Storage %s failed for %r: %s", operation, key, err)
            raise StorageFailure(operation, key, err) from err


class SQLAlchemyMemoryBackend(_SQLAlchemyBackend, MemoryBackend):
    """ """

    @staticmethod
    def _select(namespace: Namespace, key: str):
        return (
            sa.select(MemoryEntryModel)
            .where(MemoryEntryModel.scope == namespace.scope)
            .where(MemoryEntryModel.owner == namespace.owner)
            .where(MemoryEntryModel.key == key)
            .limit(1)
        )

    async def get(self, namespace: Namespace, key: str) -> Any:
        async with self.session_ctx("get", key) as session:
            entry = await session.scalar(self._select(namespace, key))
            if entry is None:
                return MISSING
            return entry.value

    async def set(self, namespace: Namespace, key: str, value: Any) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_ctx("set", key) as session:
            entry = await session.scalar(self._select(namespace, key))
            if entry is None:
                entry = MemoryEntryModel(
                    scope=namespace.scope,
                    owner=namespace.owner,
                    key=key,
                )
            entry.value = value
            entry.updated_at = now
            session.add(entry)
            await session.commit()

    async def delete(self, namespace: Namespace, key: str) -> bool:
        async with self.session_ctx("delete", key) as session:
            result = await session.execute(
                sa.delete(MemoryEntryModel)
                .where(MemoryEntryModel.scope == namespace.scope)
                .where(MemoryEntryModel.owner == namespace.owner)
                .where(MemoryEntryModel.key == key)
            )
            await session.commit()
            return result.rowcount > 0

    async def keys(self, namespace: Namespace) -> List[str]:
        async with self.session_ctx("keys", str(namespace)) as session:
            result = await session.scalars(
                sa.select(MemoryEntryModel.key)
                .where(MemoryEntryModel.scope == namespace.scope)
                .where(MemoryEntryModel.owner == namespace.owner)
                .order_by(MemoryEntryModel.entry_id)
            )
            return list(result)


def _to_context(model: ConversationContextModel) -> ConversationContext:
    return ConversationContext(
        agent=model.agent,
        user_id=model.user_id,
        room_id=model.room_id,
        context=dict(model.context or {}),
        history=list(model.message_history or []),
        message_count=model.message_count,
        last_message_at=_aware(model.last_message_at),
        context_id=model.context_id,
    )


class SQLAlchemyContextBackend(_SQLAlchemyBackend, ContextBackend):
    """ """

    @staticmethod
    def _select(key: ContextKey):
        agent, user_id, room_id = key
        return (
            sa.select(ConversationContextModel)
            .where(ConversationContextModel.agent == agent)
            .where(ConversationContextModel.user_id == user_id)
            .where(ConversationContextModel.room_id == room_id)
            .limit(1)
        )

    async def load(self, key: ContextKey) -> Optional[ConversationContext]:
        async with self.session_ctx("load", key) as session:
            model = await session.scalar(self._select(key))
            if model is None:
                return None
            return _to_context(model)

    async def create(self, key: ContextKey) -> ConversationContext:
        agent, user_id, room_id = key
        async with self.session_ctx("create", key) as session:
            model = await session.scalar(self._select(key))
            if model is not None:
                return _to_context(model)

            model = ConversationContextModel(
                agent=agent,
                user_id=user_id,
                room_id=room_id,
                context={},
                message_history=[],
                message_count=0,
                created_at=datetime.now(timezone.utc),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                # Another writer created the row first
                await session.rollback()
                model = await session.scalar(self._select(key))
            return _to_context(model)

    async def save(self, record: ConversationContext) -> None:
        async with self.session_ctx("save", record.key) as session:
            model = await session.scalar(self._select(record.key))
            if model is None:
                model = ConversationContextModel(
                    agent=record.agent,
                    user_id=record.user_id,
                    room_id=record.room_id,
                    created_at=datetime.now(timezone.utc),
                )
            model.context = dict(record.context)
            model.message_history = list(record.history)
            model.message_count = record.message_count
            model.last_message_at = record.last_message_at
            session.add(model)
            await session.commit()
            record.context_id = model.context_id
