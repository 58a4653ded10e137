"""
Health and status endpoints for process supervisors
"""
from aiohttp import web

from multibot.runtime import Runtime
from multibot.utils.aiohttp import aiohttp_error_handler_middleware


RUNTIME_KEY = web.AppKey("runtime", Runtime)


async def health(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    if runtime.stopping:
        return web.Response(text="stopping", status=503)
    return web.Response(text="ok")


async def status(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    return web.json_response({
        "stopping": runtime.stopping,
        "health": runtime.metrics.health_summary(),
        "agents": runtime.status(),
    })


def probe_app(runtime: Runtime) -> web.Application:
    app = web.Application(middlewares=[aiohttp_error_handler_middleware])
    app[RUNTIME_KEY] = runtime

    app.add_routes([
        web.get("/health", health),
        web.get("/status", status),
    ])

    return app
