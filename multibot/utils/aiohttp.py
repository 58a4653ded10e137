import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable

from aiohttp import web


LOGGER = logging.getLogger(__name__)


@web.middleware
async def aiohttp_error_handler_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException as err:
        return web.json_response(
            {"status": err.status, "message": err.reason},
            status=err.status
        )
    except Exception:
        LOGGER.exception("Error handling %s", request.path)
        return web.json_response(
            {"status": 500, "message": "Internal server error"},
            status=500,
        )


@contextlib.asynccontextmanager
async def serve_tcp(app: web.Application, host: str, port: int) -> AsyncIterator[web.AppRunner]:
    """
    Serve `app` on host:port for the duration of the block
    """
    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()
    LOGGER.info("Serving probe at http://%s:%d", host, port)

    try:
        yield runner
    finally:
        await runner.cleanup()
