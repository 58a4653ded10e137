import asyncio
import contextlib
import signal
from typing import Optional

import click

from multibot.probe import probe_app
from multibot.runtime import Runtime
from multibot.settings import RuntimeConfig
from multibot.signals import handler_failed
from multibot.utils.aiohttp import serve_tcp
from multibot.utils.asyncio import maybe_await
from multibot.utils.blinker import iterate_signals
from multibot.utils.click import async_command
from multibot.utils.importlib import import_module
from multibot.utils.logging import setup_logging


def database_url(db: Optional[str]) -> Optional[str]:
    if not db:
        return None
    if "://" in db:
        return db
    return f"sqlite+aiosqlite:///{db}"


async def report_failures() -> None:
    async for agent, kwargs in iterate_signals(handler_failed):
        error = kwargs["error"]
        click.secho(
            f"{agent.name}: {kwargs['kind']} {kwargs['name']} failed: "
            f"{type(error).__name__}: {error}",
            fg="red",
            err=True
        )


@click.group()
@click.option(
    "-d", "--db",
    envvar="MULTIBOT_DB",
    default=None,
    help="Database URL or SQLite file path. State is kept in memory when omitted"
)
@click.option(
    "-l", "--log-level",
    envvar="MULTIBOT_LOG_LEVEL",
    default="INFO",
    help="Log level"
)
@click.pass_context
def cli(ctx, db: Optional[str], log_level: str):
    setup_logging(level=log_level.upper().strip())

    ctx.obj = {"database_url": database_url(db)}


async def load_runtime(module_path: str, config: RuntimeConfig) -> Runtime:
    module = import_module(module_path, "multibot_app")

    setup = getattr(module, "setup", None)
    if setup is None:
        click.secho(f"No `setup` function found in {module_path}", fg="red")
        raise click.Abort

    runtime = await Runtime.create(config)
    try:
        await maybe_await(setup(runtime))
    except BaseException:
        await runtime.close()
        raise

    return runtime


@async_command(cli)
@click.pass_context
@click.argument("module_path")
@click.option(
    "-p", "--probe-port",
    envvar="MULTIBOT_PROBE_PORT",
    type=int,
    default=None,
    help="Serve /health and /status on this port"
)
@click.option("--probe-host", default="127.0.0.1", help="Host for the probe server")
async def run(ctx, module_path: str, probe_port: Optional[int], probe_host: str):
    """
    Start the agents set up by MODULE_PATH and run until interrupted
    """
    config = RuntimeConfig(
        database_url=ctx.obj["database_url"],
        probe_host=probe_host,
        probe_port=probe_port,
    )
    runtime = await load_runtime(module_path, config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with contextlib.AsyncExitStack() as stack:
        await stack.enter_async_context(runtime)
        reporter = asyncio.ensure_future(report_failures())
        stack.callback(reporter.cancel)
        if config.probe_port is not None:
            await stack.enter_async_context(
                serve_tcp(probe_app(runtime), config.probe_host, config.probe_port)
            )

        click.secho(
            f"Running {len(runtime.registry)} agent(s): "
            f"{', '.join(runtime.registry.names())}",
            fg="green",
            bold=True
        )
        await stop.wait()
        click.echo("Shutting down")
        runtime.stopping = True


@async_command(cli)
@click.pass_context
@click.argument("module_path")
async def agents(ctx, module_path: str):
    """
    List the agents set up by MODULE_PATH with their commands
    """
    config = RuntimeConfig(database_url=ctx.obj["database_url"])
    runtime = await load_runtime(module_path, config)

    async with runtime:
        for agent in runtime.registry.all():
            click.echo(
                f"{click.style(agent.name, fg='yellow', bold=True)} "
                f"({type(agent).__name__}, {agent.identity.user_id})"
            )
            prefix = agent.settings.command_prefix
            for spec in agent.commands:
                line = f"  {spec.usage(prefix)}"
                if spec.description:
                    line += f" - {spec.description}"
                click.echo(line)
            for event_type in agent.events.event_types():
                click.echo(f"  on {event_type}")
