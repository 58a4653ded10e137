import asyncio
import functools
import inspect
import logging
import weakref
from typing import Any, Awaitable, Callable, Hashable, Optional, TypeVar, Union


T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


async def maybe_await(obj: Union[T, Awaitable[T]]) -> T:
    if inspect.isawaitable(obj):
        return await obj
    return obj


def is_async_callable(func: Callable[..., Any]) -> bool:
    while isinstance(func, functools.partial):
        func = func.func
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


async def call_with_timeout(
    func: Callable[..., Union[T, Awaitable[T]]],
    *args: Any,
    timeout: Optional[float] = None,
) -> T:
    """
    Call `func(*args)`, awaiting the result if it is awaitable, and give
    up after `timeout` seconds with asyncio.TimeoutError. Coroutines are
    cancelled. With a timeout set, plain functions run in a worker thread
    so a blocking call cannot stall the event loop; a thread cannot be
    interrupted, so one that overruns keeps running in the background.
    """
    if timeout is None:
        return await maybe_await(func(*args))

    async def call():
        if is_async_callable(func):
            return await func(*args)
        return await maybe_await(await asyncio.to_thread(func, *args))

    return await asyncio.wait_for(call(), timeout)


class KeyedLocks:
    """
    One asyncio.Lock per key. A lock lives only while something holds
    or waits on it.
    """
    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
