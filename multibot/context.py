import abc
import copy
import dataclasses as dc
import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from multibot.utils.asyncio import KeyedLocks, maybe_await


LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 20

ContextKey = Tuple[str, str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dc.dataclass
class ConversationContext:
    """
    State an agent keeps about one user in one room
    """
    agent: str
    user_id: str
    room_id: str
    context: Dict[str, Any] = dc.field(default_factory=dict)
    history: List[Dict[str, Any]] = dc.field(default_factory=list)
    message_count: int = 0
    last_message_at: Optional[datetime] = None
    context_id: Optional[int] = None

    @property
    def key(self) -> ContextKey:
        return (self.agent, self.user_id, self.room_id)

    def recent_messages(self, limit: int = 10) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return self.history[-limit:]

    def is_active(self, window: timedelta = timedelta(hours=1), now: Optional[datetime] = None) -> bool:
        if self.last_message_at is None:
            return False
        if now is None:
            now = utcnow()
        return self.last_message_at > now - window

    def summary(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "room_id": self.room_id,
            "active": self.is_active(),
            "message_count": self.message_count,
            "last_message_at": self.last_message_at,
            "context": dict(self.context),
        }


class ContextBackend(abc.ABC):
    """
    Durable storage for conversation contexts. `create` must return the
    existing record when the triple is already stored.
    """
    @abc.abstractmethod
    async def load(self, key: ContextKey) -> Optional[ConversationContext]:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def create(self, key: ContextKey) -> ConversationContext:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def save(self, record: ConversationContext) -> None:
        """ """
        raise NotImplementedError


class InMemoryContextBackend(ContextBackend):
    """
    Keeps records in a dict. Callers always get copies, so a record only
    changes in the store through `save`.
    """

    def __init__(self) -> None:
        self.records: Dict[ContextKey, ConversationContext] = {}
        self._ids = itertools.count(1)

    async def load(self, key: ContextKey) -> Optional[ConversationContext]:
        record = self.records.get(key)
        if record is None:
            return None
        return copy.deepcopy(record)

    async def create(self, key: ContextKey) -> ConversationContext:
        record = self.records.get(key)
        if record is None:
            agent, user_id, room_id = key
            record = ConversationContext(agent, user_id, room_id, context_id=next(self._ids))
            self.records[key] = record
        return copy.deepcopy(record)

    async def save(self, record: ConversationContext) -> None:
        self.records[record.key] = copy.deepcopy(record)


class ContextStore:
    """
    Conversation contexts keyed by (agent, user, room). Writes to one
    triple are serialised; different triples update concurrently.
    """
    def __init__(
        self,
        backend: Optional[ContextBackend] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        if backend is None:
            backend = InMemoryContextBackend()
        self.backend = backend
        self.history_size = history_size
        self._locks = KeyedLocks()

    async def _load_or_create(self, key: ContextKey) -> ConversationContext:
        record = await self.backend.load(key)
        if record is None:
            record = await self.backend.create(key)
            LOGGER.debug("Created conversation context %s", "/".join(key))
        return record

    async def get_or_create(self, agent: str, user_id: str, room_id: str) -> ConversationContext:
        key = (agent, user_id, room_id)
        async with self._locks(key):
            return await self._load_or_create(key)

    async def get(self, agent: str, user_id: str, room_id: str) -> Optional[ConversationContext]:
        return await self.backend.load((agent, user_id, room_id))

    async def update(
        self,
        agent: str,
        user_id: str,
        room_id: str,
        mutator: Callable[[ConversationContext], Union[None, Awaitable[None]]],
    ) -> ConversationContext:
        key = (agent, user_id, room_id)
        async with self._locks(key):
            record = await self._load_or_create(key)
            await maybe_await(mutator(record))
            await self.backend.save(record)
            return record

    async def update_context(
        self,
        agent: str,
        user_id: str,
        room_id: str,
        data: Mapping[str, Any],
    ) -> ConversationContext:

        def merge(record):
            record.context.update(data)

        return await self.update(agent, user_id, room_id, merge)

    async def append_message(
        self,
        agent: str,
        user_id: str,
        room_id: str,
        message: Mapping[str, Any],
        history_size: Optional[int] = None,
    ) -> ConversationContext:
        """
        Push `message` onto the history (oldest entries beyond
        `history_size` are dropped) and bump the message count and
        last-message time in the same locked update.
        """
        if history_size is None:
            history_size = self.history_size
        now = utcnow()

        def append(record):
            entry = dict(message)
            entry.setdefault("timestamp", int(now.timestamp() * 1000))
            record.history = [*record.history, entry][-history_size:]
            record.message_count += 1
            record.last_message_at = now

        return await self.update(agent, user_id, room_id, append)

    async def recent_messages(
        self, agent: str, user_id: str, room_id: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        record = await self.get(agent, user_id, room_id)
        if record is None:
            return []
        return record.recent_messages(limit)

    async def prune_history(
        self, agent: str, user_id: str, room_id: str, keep: int = 5
    ) -> ConversationContext:

        def prune(record):
            record.history = record.history[-keep:] if keep > 0 else []

        return await self.update(agent, user_id, room_id, prune)

    async def remember(
        self,
        agent: str,
        user_id: str,
        room_id: str,
        key: str,
        default_fn: Callable[[], Any],
    ) -> Any:
        """
        Read `key` from the context map, computing and storing
        `default_fn()` when it is absent
        """
        result = {}

        async def fill(record):
            if key not in record.context:
                record.context[key] = await maybe_await(default_fn())
            result["value"] = record.context[key]

        await self.update(agent, user_id, room_id, fill)
        return result["value"]
