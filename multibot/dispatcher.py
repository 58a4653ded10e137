import asyncio
import dataclasses as dc
import enum
import logging
import re
import time
from typing import TYPE_CHECKING, Any, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from multibot.commands import Argument, CommandSpec
from multibot.errors import (
    HandlerTimeout,
    InvalidArgument,
    MissingArgument,
    MultibotError,
    ParseError,
    ScopeDenied,
    UnknownCommand,
)
from multibot.events import InboundEvent
from multibot.signals import command_dispatched, handler_failed
from multibot.utils.asyncio import call_with_timeout, maybe_await

if TYPE_CHECKING:
    from multibot.agent import Agent


LOGGER = logging.getLogger(__name__)

QUOTES = "\"'"


class Outcome(enum.Enum):
    HANDLED = "handled"
    NOT_A_COMMAND = "not_a_command"
    UNKNOWN_COMMAND = "unknown_command"
    PARSE_ERROR = "parse_error"
    SCOPE_DENIED = "scope_denied"
    MISSING_ARGUMENT = "missing_argument"
    INVALID_ARGUMENT = "invalid_argument"
    HANDLER_TIMEOUT = "handler_timeout"
    HANDLER_FAILED = "handler_failed"


@dc.dataclass(frozen=True)
class DispatchResult:
    """
    What happened to one inbound message. `error` holds the typed
    exception for every outcome other than HANDLED and NOT_A_COMMAND.
    `duration` is set in seconds once the handler has been invoked.
    """
    outcome: Outcome
    command: Optional[str] = None
    args: Sequence[Any] = ()
    result: Any = None
    error: Optional[BaseException] = None
    duration: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.HANDLED, Outcome.NOT_A_COMMAND)


NOT_A_COMMAND = DispatchResult(Outcome.NOT_A_COMMAND)


class Flags(Mapping[str, Union[str, bool]]):
    """
    Flags given with a command: `--name=value` maps to the value,
    `--name` and each letter of `-abc` map to True
    """
    def __init__(self, values: Optional[Mapping[str, Union[str, bool]]] = None) -> None:
        self._values = dict(values or {})

    def __getitem__(self, name: str) -> Union[str, bool]:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Flags({self._values!r})"


@dc.dataclass(frozen=True)
class CommandRequest:
    """ """
    command: str
    args: List[str]
    raw_args: str = ""
    flags: Flags = dc.field(default_factory=Flags)


LONG_VALUE_FLAG_RE = re.compile(r"--([^=]+)=(.+)")
LONG_FLAG_RE = re.compile(r"--(.+)")
SHORT_FLAGS_RE = re.compile(r"-([a-zA-Z]+)")


def split_flags(tokens: Sequence[Tuple[str, bool]]) -> Tuple[List[str], Flags]:
    """
    Separate flags from positional arguments. Takes `(token, quoted)`
    pairs; a quoted token is always positional.
    """
    positional = []
    flags = {}
    for token, quoted in tokens:
        if quoted:
            positional.append(token)
            continue
        match = LONG_VALUE_FLAG_RE.fullmatch(token)
        if match:
            flags[match.group(1)] = match.group(2)
            continue
        match = LONG_FLAG_RE.fullmatch(token)
        if match:
            flags[match.group(1)] = True
            continue
        match = SHORT_FLAGS_RE.fullmatch(token)
        if match:
            flags.update((char, True) for char in match.group(1))
            continue
        positional.append(token)
    return positional, Flags(flags)


def tokenize(text: str) -> List[str]:
    """
    Split on whitespace, keeping quoted sections together. A quote only
    opens at the start of a token, so apostrophes inside words are
    literal; a quote that is opened and never closed is a ParseError.
    """
    return [token for token, _ in _tokenize(text)]


def _tokenize(text: str) -> List[Tuple[str, bool]]:
    tokens = []
    current = []
    in_token = False
    quoted = False
    quote = None

    for char in text:
        if quote is not None:
            if char == quote:
                quote = None
            else:
                current.append(char)
            continue
        if char.isspace():
            if in_token:
                tokens.append(("".join(current), quoted))
                current = []
                in_token = False
                quoted = False
            continue
        if char in QUOTES and not in_token:
            quote = char
            in_token = True
            quoted = True
            continue
        current.append(char)
        in_token = True

    if quote is not None:
        raise ParseError(text, f"unterminated {quote} quote")
    if in_token:
        tokens.append(("".join(current), quoted))

    return tokens


def parse_command(body: str, prefix: str) -> Optional[CommandRequest]:
    """
    Return None when `body` is not addressed to the command prefix
    """
    text = body.strip()
    if not text.startswith(prefix):
        return None
    content = text[len(prefix):].strip()
    if not content:
        return None

    tokens = _tokenize(content)
    if not tokens:
        return None

    (name, _), *rest = tokens
    args, flags = split_flags(rest)
    return CommandRequest(name.lower(), args, " ".join(token for token, _ in rest), flags)


def coerce(arg: Argument, token: str, command: Optional[str] = None) -> Any:
    if arg.type is None:
        return token
    try:
        return arg.type(token)
    except (TypeError, ValueError):
        if arg.type is int:
            reason = "must be an integer"
        elif arg.type is float:
            reason = "must be a number"
        else:
            reason = f"must be a valid {getattr(arg.type, '__name__', 'value')}"
        raise InvalidArgument(arg.name, token, reason, command) from None


def bind_arguments(spec: CommandSpec, tokens: Sequence[str]) -> List[Any]:
    """
    Bind tokens to the spec's arguments by position. Tokens beyond a
    fixed signature are joined into the last argument; a trailing
    variadic argument receives a list of whatever is left.
    """
    arguments = spec.arguments
    tokens = list(tokens)
    if not arguments:
        return []

    variadic_arg = spec.variadic
    fixed = arguments[:-1] if variadic_arg is not None else arguments

    if variadic_arg is None and len(tokens) > len(fixed):
        head = tokens[:len(fixed) - 1]
        tokens = [*head, " ".join(tokens[len(fixed) - 1:])]

    out = []
    for idx, arg in enumerate(fixed):
        if idx < len(tokens):
            out.append(coerce(arg, tokens[idx], spec.name))
        elif arg.optional:
            out.append(arg.default)
        else:
            raise MissingArgument(arg.name, spec.name)

    if variadic_arg is not None:
        rest = tokens[len(fixed):]
        out.append([coerce(variadic_arg, token, spec.name) for token in rest])

    return out


class CommandDispatcher:
    """
    Turns a prefixed chat message into exactly one handler invocation.
    Every outcome, including handler failures, comes back as a
    DispatchResult; nothing raised by a handler escapes `dispatch`.
    """
    async def dispatch(self, agent: "Agent", event: InboundEvent) -> DispatchResult:
        settings = agent.settings
        body = event.body
        if not event.is_message or body is None:
            return NOT_A_COMMAND

        try:
            request = parse_command(body, settings.command_prefix)
        except ParseError as err:
            agent.logger.debug("Unable to parse %r: %s", body, err.reason)
            return self._finish(agent, event, DispatchResult(Outcome.PARSE_ERROR, error=err))

        if request is None:
            return NOT_A_COMMAND

        spec = agent.commands.lookup(request.command)
        if spec is None or request.command in settings.disabled_commands:
            return self._finish(agent, event, DispatchResult(
                Outcome.UNKNOWN_COMMAND,
                command=request.command,
                args=request.args,
                error=UnknownCommand(request.command),
            ))

        ctx = agent.invocation_context(event, command=spec, flags=request.flags)

        if not await self._allowed(agent, spec, ctx):
            return self._finish(agent, event, DispatchResult(
                Outcome.SCOPE_DENIED,
                command=spec.name,
                args=request.args,
                error=ScopeDenied(spec.name),
            ))

        try:
            args = bind_arguments(spec, request.args)
        except MissingArgument as err:
            return self._finish(agent, event, DispatchResult(
                Outcome.MISSING_ARGUMENT, command=spec.name, args=request.args, error=err
            ))
        except InvalidArgument as err:
            return self._finish(agent, event, DispatchResult(
                Outcome.INVALID_ARGUMENT, command=spec.name, args=request.args, error=err
            ))

        started = time.monotonic()
        result = await self._invoke(agent, spec, ctx, args)
        result = dc.replace(result, duration=time.monotonic() - started)
        return self._finish(agent, event, result)

    async def _allowed(self, agent: "Agent", spec: CommandSpec, ctx: Any) -> bool:
        try:
            return bool(await maybe_await(spec.scope.allows(ctx)))
        except Exception:
            agent.logger.exception("Scope check for %s raised, denying", spec.name)
            return False

    async def _invoke(
        self, agent: "Agent", spec: CommandSpec, ctx: Any, args: List[Any]
    ) -> DispatchResult:
        timeout = agent.settings.handler_timeout
        agent.logger.debug("Running command %s", spec.name)
        try:
            result = await call_with_timeout(spec.handler, ctx, *args, timeout=timeout)
        except asyncio.TimeoutError:
            err = HandlerTimeout(f"command {spec.name}", timeout)
            agent.logger.error(
                "Command %s failed: %s: %s", spec.name, type(err).__name__, err
            )
            handler_failed.send(agent, kind="command", name=spec.name, error=err)
            return DispatchResult(Outcome.HANDLER_TIMEOUT, command=spec.name, args=args, error=err)
        except MissingArgument as err:
            return DispatchResult(Outcome.MISSING_ARGUMENT, command=spec.name, args=args, error=err)
        except InvalidArgument as err:
            return DispatchResult(Outcome.INVALID_ARGUMENT, command=spec.name, args=args, error=err)
        except Exception as err:
            agent.logger.exception(
                "Command %s failed: %s: %s", spec.name, type(err).__name__, err
            )
            handler_failed.send(agent, kind="command", name=spec.name, error=err)
            return DispatchResult(Outcome.HANDLER_FAILED, command=spec.name, args=args, error=err)

        return DispatchResult(Outcome.HANDLED, command=spec.name, args=args, result=result)

    def _finish(self, agent: "Agent", event: InboundEvent, result: DispatchResult) -> DispatchResult:
        if isinstance(result.error, MultibotError):
            agent.logger.debug(
                "Dispatch of %r ended with %s", event.body, result.outcome.value
            )
        command_dispatched.send(agent, event=event, result=result)
        return result
