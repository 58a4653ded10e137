from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    pass


class MemoryEntryModel(Base):
    """
    """
    __tablename__ = "memory_entry"
    __table_args__ = (
        sa.UniqueConstraint("scope", "owner", "key", name="uq_memory_entry_key"),
    )

    entry_id: Mapped[int] = mapped_column(primary_key=True)
    scope: Mapped[str] = mapped_column(sa.String(32))
    owner: Mapped[str] = mapped_column(sa.String(255), default="")
    key: Mapped[str] = mapped_column(sa.String(255))
    value: Mapped[Any] = mapped_column(sa.JSON, nullable=True)
    updated_at: Mapped[datetime]


class ConversationContextModel(Base):
    """
    """
    __tablename__ = "conversation_context"
    __table_args__ = (
        sa.UniqueConstraint("agent", "user_id", "room_id", name="uq_conversation_context_key"),
    )

    context_id: Mapped[int] = mapped_column(primary_key=True)
    agent: Mapped[str] = mapped_column(sa.String(255))
    user_id: Mapped[str] = mapped_column(sa.String(255))
    room_id: Mapped[str] = mapped_column(sa.String(255))
    context: Mapped[Any] = mapped_column(sa.JSON, default=dict)
    message_history: Mapped[Any] = mapped_column(sa.JSON, default=list)
    message_count: Mapped[int] = mapped_column(default=0)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
