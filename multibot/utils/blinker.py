import asyncio
from typing import Any, AsyncGenerator

import blinker


async def iterate_signals(signal: blinker.Signal, sender: Any = blinker.ANY) -> AsyncGenerator:
    """
    Yield `(sender, kwargs)` for every send of `signal` until the
    generator is closed
    """
    queue = asyncio.Queue()

    def handle_signal(sender, **kwargs):
        queue.put_nowait((sender, kwargs))

    signal.connect(handle_signal, sender, weak=False)

    try:
        while True:
            yield await queue.get()
    finally:
        signal.disconnect(handle_signal)
