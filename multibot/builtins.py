"""
Commands every agent answers to unless it sets `include_builtins = False`
"""
import platform
import time
from datetime import timedelta
from importlib import metadata
from typing import List, Optional

from multibot.commands import CommandSpec, command, get_command, optional, variadic
from multibot.utils.asyncio import maybe_await


def multibot_version() -> str:
    try:
        return metadata.version("multibot")
    except metadata.PackageNotFoundError:
        return "unknown"


def format_uptime(seconds: float) -> str:
    return str(timedelta(seconds=int(seconds)))


async def _allowed(spec: CommandSpec, ctx) -> bool:
    try:
        return bool(await maybe_await(spec.scope.allows(ctx)))
    except Exception:
        ctx.logger.debug("Scope check for %s raised, hiding it from help", spec.name)
        return False


@command(
    arguments=[optional("command")],
    notes="Only commands usable in the current room are listed.",
)
async def help(ctx, name: Optional[str] = None) -> str:
    """
    List commands, or describe one
    """
    prefix = ctx.agent.settings.command_prefix
    disabled = ctx.agent.settings.disabled_commands

    if name is not None:
        if name.startswith(prefix):
            name = name[len(prefix):]
        name = name.lower()
        spec = ctx.agent.commands.lookup(name)
        if spec is None or name in disabled or not await _allowed(spec, ctx):
            text = f"Unknown command: {name}"
        else:
            lines = [spec.usage(prefix)]
            if spec.description:
                lines.append(spec.description)
            if spec.notes:
                lines.append(spec.notes)
            text = "\n".join(lines)
        await ctx.reply(text)
        return text

    lines = ["Available commands:"]
    for spec in ctx.agent.commands:
        if spec.name in disabled or not await _allowed(spec, ctx):
            continue
        line = f"  {spec.usage(prefix)}"
        if spec.description:
            line += f" - {spec.description}"
        lines.append(line)

    text = "\n".join(lines)
    await ctx.reply(text)
    return text


@command
async def ping(ctx) -> str:
    """
    Check that the agent is responding
    """
    start = time.monotonic()
    await ctx.memory.increment("pings")
    elapsed_ms = (time.monotonic() - start) * 1000
    text = f"Pong! ({elapsed_ms:.2f}ms)"
    await ctx.reply(text)
    return text


@command(arguments=[variadic("message")])
async def echo(ctx, words: List[str]) -> Optional[str]:
    """
    Echo back the provided message
    """
    message = " ".join(words).strip()
    if not message:
        await ctx.reply(f"Nothing to echo. Usage: {ctx.agent.settings.command_prefix}echo <message>")
        return None
    await ctx.reply(message, notice=False)
    return message


@command
async def version(ctx) -> str:
    """
    Show version information
    """
    text = "\n".join([
        f"multibot: {multibot_version()}",
        f"Python: {platform.python_version()}",
        f"Platform: {platform.platform()}",
    ])
    await ctx.reply(text)
    return text


@command
async def status(ctx) -> str:
    """
    Show agent status
    """
    agent = ctx.agent
    text = "\n".join([
        f"Agent: {agent.name}",
        f"State: {agent.state}",
        f"Uptime: {format_uptime(agent.uptime())}",
        f"User ID: {agent.identity.user_id}",
        f"Events handled: {agent.events_handled}",
        f"Agents running: {len(agent.runtime.registry)}",
    ])
    await ctx.reply(text)
    return text


BUILTINS = [help, ping, echo, version, status]


def builtin_commands() -> List[CommandSpec]:
    return [get_command(func) for func in BUILTINS]
