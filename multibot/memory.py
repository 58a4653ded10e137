import abc
import copy
import dataclasses as dc
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from multibot.utils.asyncio import KeyedLocks, maybe_await


LOGGER = logging.getLogger(__name__)

AGENT_SCOPE = "agent"
GLOBAL_SCOPE = "global"


class _Missing:

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


@dc.dataclass(frozen=True)
class Namespace:
    """
    Where a key lives: private to one agent, or shared by all of them
    """
    scope: str
    owner: str = ""

    def __post_init__(self) -> None:
        if self.scope == AGENT_SCOPE and not self.owner:
            raise ValueError("Agent namespaces need an owner")
        if self.scope == GLOBAL_SCOPE and self.owner:
            raise ValueError("The global namespace has no owner")
        if self.scope not in (AGENT_SCOPE, GLOBAL_SCOPE):
            raise ValueError(f"Invalid namespace scope: {self.scope}")

    @classmethod
    def agent(cls, name: str) -> "Namespace":
        return cls(AGENT_SCOPE, name)

    def __str__(self) -> str:
        if self.owner:
            return f"{self.scope}/{self.owner}"
        return self.scope


GLOBAL = Namespace(GLOBAL_SCOPE)


class MemoryBackend(abc.ABC):
    """
    Durable storage for memory entries. Implementations raise
    StorageFailure when the underlying store fails and return MISSING for
    absent keys.
    """
    @abc.abstractmethod
    async def get(self, namespace: Namespace, key: str) -> Any:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def set(self, namespace: Namespace, key: str, value: Any) -> None:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, namespace: Namespace, key: str) -> bool:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def keys(self, namespace: Namespace) -> List[str]:
        """ """
        raise NotImplementedError


class InMemoryBackend(MemoryBackend):
    """
    Process-local backend. Values are copied on the way in and out so
    callers never share mutable state with the store.
    """
    def __init__(self) -> None:
        self.entries: Dict[Tuple[Namespace, str], Any] = {}

    async def get(self, namespace: Namespace, key: str) -> Any:
        value = self.entries.get((namespace, key), MISSING)
        if value is MISSING:
            return value
        return copy.deepcopy(value)

    async def set(self, namespace: Namespace, key: str, value: Any) -> None:
        self.entries[(namespace, key)] = copy.deepcopy(value)

    async def delete(self, namespace: Namespace, key: str) -> bool:
        return self.entries.pop((namespace, key), MISSING) is not MISSING

    async def keys(self, namespace: Namespace) -> List[str]:
        return [key for ns, key in self.entries if ns == namespace]


class MemoryStore:
    """
    Namespaced key/value memory. Every read-modify-write on a key holds
    that key's lock, so concurrent increments and remembers never lose
    an update. Different keys proceed concurrently.
    """
    def __init__(self, backend: Optional[MemoryBackend] = None) -> None:
        if backend is None:
            backend = InMemoryBackend()
        self.backend = backend
        self._locks = KeyedLocks()

    def _lock(self, namespace: Namespace, key: str):
        return self._locks((namespace, key))

    async def get(self, namespace: Namespace, key: str, default: Any = None) -> Any:
        value = await self.backend.get(namespace, key)
        if value is MISSING:
            return default
        return value

    async def exists(self, namespace: Namespace, key: str) -> bool:
        return await self.backend.get(namespace, key) is not MISSING

    async def set(self, namespace: Namespace, key: str, value: Any) -> None:
        async with self._lock(namespace, key):
            await self.backend.set(namespace, key, value)

    async def delete(self, namespace: Namespace, key: str) -> bool:
        async with self._lock(namespace, key):
            return await self.backend.delete(namespace, key)

    async def keys(self, namespace: Namespace) -> List[str]:
        return await self.backend.keys(namespace)

    async def all(self, namespace: Namespace) -> Dict[str, Any]:
        out = {}
        for key in await self.backend.keys(namespace):
            value = await self.backend.get(namespace, key)
            if value is not MISSING:
                out[key] = value
        return out

    async def increment(self, namespace: Namespace, key: str, by: Union[int, float] = 1) -> Union[int, float]:
        async with self._lock(namespace, key):
            current = await self.backend.get(namespace, key)
            if current is MISSING or current is None:
                current = 0
            if not isinstance(current, (int, float)) or isinstance(current, bool):
                raise TypeError(
                    f"Cannot increment {namespace}:{key}, "
                    f"it holds a {type(current).__name__}"
                )
            new_value = current + by
            await self.backend.set(namespace, key, new_value)
            return new_value

    async def decrement(self, namespace: Namespace, key: str, by: Union[int, float] = 1) -> Union[int, float]:
        return await self.increment(namespace, key, -by)

    async def remember(
        self,
        namespace: Namespace,
        key: str,
        default_fn: Callable[[], Union[Any, Awaitable[Any]]],
    ) -> Any:
        """
        Return the stored value, or compute `default_fn()`, store and
        return it. `default_fn` runs at most once per missing key; the
        key lock is held while it runs.
        """
        async with self._lock(namespace, key):
            value = await self.backend.get(namespace, key)
            if value is not MISSING:
                return value
            value = await maybe_await(default_fn())
            await self.backend.set(namespace, key, value)
            LOGGER.debug("Remembered %s:%s", namespace, key)
            return value

    async def push(self, namespace: Namespace, key: str, value: Any) -> List[Any]:
        async with self._lock(namespace, key):
            items = await self.backend.get(namespace, key)
            if items is MISSING or items is None:
                items = []
            if not isinstance(items, list):
                raise TypeError(f"Cannot push onto {namespace}:{key}, it is not a list")
            items.append(value)
            await self.backend.set(namespace, key, items)
            return items

    async def pull(self, namespace: Namespace, key: str, value: Any) -> List[Any]:
        async with self._lock(namespace, key):
            items = await self.backend.get(namespace, key)
            if items is MISSING or items is None:
                return []
            if not isinstance(items, list):
                raise TypeError(f"Cannot pull from {namespace}:{key}, it is not a list")
            items = [item for item in items if item != value]
            await self.backend.set(namespace, key, items)
            return items

    def scoped(self, namespace: Namespace) -> "ScopedMemory":
        return ScopedMemory(self, namespace)

    def for_agent(self, name: str) -> "ScopedMemory":
        return self.scoped(Namespace.agent(name))

    def shared(self) -> "ScopedMemory":
        return self.scoped(GLOBAL)


@dc.dataclass(frozen=True)
class ScopedMemory:
    """
    A MemoryStore bound to one namespace, as handed to handlers
    """
    store: MemoryStore
    namespace: Namespace

    async def get(self, key: str, default: Any = None) -> Any:
        return await self.store.get(self.namespace, key, default)

    async def exists(self, key: str) -> bool:
        return await self.store.exists(self.namespace, key)

    async def set(self, key: str, value: Any) -> None:
        await self.store.set(self.namespace, key, value)

    async def delete(self, key: str) -> bool:
        return await self.store.delete(self.namespace, key)

    async def keys(self) -> List[str]:
        return await self.store.keys(self.namespace)

    async def all(self) -> Dict[str, Any]:
        return await self.store.all(self.namespace)

    async def increment(self, key: str, by: Union[int, float] = 1) -> Union[int, float]:
        return await self.store.increment(self.namespace, key, by)

    async def decrement(self, key: str, by: Union[int, float] = 1) -> Union[int, float]:
        return await self.store.decrement(self.namespace, key, by)

    async def remember(self, key: str, default_fn: Callable[[], Any]) -> Any:
        return await self.store.remember(self.namespace, key, default_fn)

    async def push(self, key: str, value: Any) -> List[Any]:
        return await self.store.push(self.namespace, key, value)

    async def pull(self, key: str, value: Any) -> List[Any]:
        return await self.store.pull(self.namespace, key, value)
