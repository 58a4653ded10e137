import asyncio
import functools
from typing import Any, Callable, Coroutine

import click


def async_command(group: click.Group, *args, **kwargs) -> Callable:
    """
    Like `group.command()`, for a coroutine function. The command runs
    in a fresh event loop.
    """
    def dec(f: Callable[..., Coroutine[Any, Any, Any]]) -> click.Command:

        @functools.wraps(f)
        def wrapper(*f_args, **f_kwargs):
            return asyncio.run(f(*f_args, **f_kwargs))

        return group.command(*args, **kwargs)(wrapper)

    return dec
