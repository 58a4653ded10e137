import abc
import dataclasses as dc
import inspect
import logging
import re
import textwrap
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from multibot.errors import InvalidCommandSpec

if TYPE_CHECKING:
    from multibot.agent import InvocationContext


LOGGER = logging.getLogger(__name__)

COMMAND_NAME_RE = re.compile(r"^[^\s]+$")


class Scope(abc.ABC):
    """
    Decides whether a command may run for a given invocation
    """
    @abc.abstractmethod
    def allows(self, ctx: "InvocationContext") -> Any:
        """
        Return a bool, or an awaitable resolving to one
        """
        raise NotImplementedError


@dc.dataclass(frozen=True)
class Always(Scope):

    def allows(self, ctx: "InvocationContext") -> bool:
        return True


@dc.dataclass(frozen=True)
class DirectMessageOnly(Scope):

    def allows(self, ctx: "InvocationContext") -> bool:
        return ctx.event.is_direct


@dc.dataclass(frozen=True)
class Predicate(Scope):
    """
    An arbitrary check evaluated against the invocation context, e.g.
    Predicate(lambda ctx: ctx.can_send("m.reaction"))
    """
    func: Callable[["InvocationContext"], Any]

    def allows(self, ctx: "InvocationContext") -> Any:
        return self.func(ctx)


ALWAYS = Always()

DIRECT_MESSAGE_ONLY = DirectMessageOnly()

SCOPE_ALIASES = {
    "always": ALWAYS,
    "direct-message-only": DIRECT_MESSAGE_ONLY,
    "dm": DIRECT_MESSAGE_ONLY,
}


def get_scope(obj: Any) -> Scope:
    if obj is None:
        return ALWAYS
    if isinstance(obj, Scope):
        return obj
    if isinstance(obj, str):
        try:
            return SCOPE_ALIASES[obj]
        except KeyError:
            raise TypeError(f"Invalid scope: {obj}") from None
    if callable(obj):
        return Predicate(obj)
    raise TypeError(f"Invalid scope: {obj}")


@dc.dataclass(frozen=True)
class Argument:
    """
    One positional command argument. A variadic argument collects every
    remaining token into a list and must come last.
    """
    name: str
    optional: bool = False
    default: Any = None
    variadic: bool = False
    type: Optional[Callable[[str], Any]] = None
    description: Optional[str] = None

    def usage(self) -> str:
        name = self.name.upper()
        if self.variadic:
            return f"[{name}...]"
        if self.optional:
            return f"[{name}]"
        return name


def optional(name: str, default: Any = None, **kwargs) -> Argument:
    return Argument(name, optional=True, default=default, **kwargs)


def variadic(name: str, **kwargs) -> Argument:
    return Argument(name, optional=True, variadic=True, **kwargs)


@dc.dataclass(frozen=True)
class CommandSpec:
    """
    """
    name: str
    handler: Callable[..., Any]
    description: str = ""
    arguments: Tuple[Argument, ...] = ()
    scope: Scope = ALWAYS
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "arguments", tuple(self.arguments))

    @property
    def variadic(self) -> Optional[Argument]:
        if self.arguments and self.arguments[-1].variadic:
            return self.arguments[-1]
        return None

    def usage(self, prefix: str = "!") -> str:
        return " ".join([f"{prefix}{self.name}", *(arg.usage() for arg in self.arguments)])


def validate_spec(spec: CommandSpec) -> None:
    if not spec.name or not COMMAND_NAME_RE.match(spec.name):
        raise InvalidCommandSpec(spec.name, "name must be a single non-empty token")
    if spec.name != spec.name.lower():
        raise InvalidCommandSpec(spec.name, "name must be lower case")
    if not callable(spec.handler):
        raise InvalidCommandSpec(spec.name, "handler is not callable")

    seen_optional = None
    names = set()
    for idx, arg in enumerate(spec.arguments):
        if not isinstance(arg, Argument):
            raise InvalidCommandSpec(spec.name, f"invalid argument descriptor: {arg!r}")
        if arg.name in names:
            raise InvalidCommandSpec(spec.name, f"duplicate argument '{arg.name}'")
        names.add(arg.name)
        if arg.variadic and idx != len(spec.arguments) - 1:
            raise InvalidCommandSpec(spec.name, f"variadic argument '{arg.name}' must be last")
        if arg.optional or arg.variadic:
            seen_optional = arg
        elif seen_optional is not None:
            raise InvalidCommandSpec(
                spec.name,
                f"required argument '{arg.name}' follows optional "
                f"argument '{seen_optional.name}'"
            )

    if not isinstance(spec.scope, Scope):
        raise InvalidCommandSpec(spec.name, f"invalid scope: {spec.scope!r}")
    if isinstance(spec.scope, Predicate):
        _validate_predicate(spec.name, spec.scope.func)


def _validate_predicate(name: str, func: Any) -> None:
    if not callable(func):
        raise InvalidCommandSpec(name, "scope predicate is not callable")
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        # Some builtins have no introspectable signature
        return
    try:
        signature.bind(None)
    except TypeError:
        raise InvalidCommandSpec(
            name, "scope predicate must accept the invocation context as its only argument"
        ) from None


def command(
    func: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    arguments: Sequence[Argument] = (),
    scope: Union[Scope, str, Callable, None] = None,
    notes: Optional[str] = None,
):
    """
    Attach a CommandSpec to a handler function. The handler is called as
    `handler(ctx, *arguments)`.
    """
    def dec(f):
        f_name = name or f.__name__.replace("_", "-")
        f_description = description
        if f_description is None and getattr(f, "__doc__", None):
            f_description = textwrap.dedent(f.__doc__).strip().split("\n", 1)[0]
        elif f_description is None:
            f_description = ""

        f._cmd = CommandSpec(
            name=f_name,
            handler=f,
            description=f_description,
            arguments=tuple(arguments),
            scope=get_scope(scope),
            notes=notes,
        )
        return f

    if func is None:
        return dec

    return dec(func)


def get_command(obj: Any) -> CommandSpec:
    if isinstance(obj, CommandSpec):
        return obj
    if callable(obj) and isinstance(getattr(obj, "_cmd", None), CommandSpec):
        return obj._cmd
    raise TypeError(f"Invalid command: {obj}")


class CommandRegistry:
    """
    Command specs by name, in registration order. Registering a name
    again replaces the earlier spec in place.
    """
    def __init__(self, commands: Iterable[Any] = ()) -> None:
        self._commands: Dict[str, CommandSpec] = {}

        for cmd in commands:
            self.register(cmd)

    def register(self, obj: Any) -> CommandSpec:
        spec = get_command(obj)
        validate_spec(spec)
        if spec.name in self._commands:
            LOGGER.debug("Replacing command '%s'", spec.name)
        self._commands[spec.name] = spec
        return spec

    def lookup(self, name: str) -> Optional[CommandSpec]:
        return self._commands.get(name)

    def all(self) -> List[CommandSpec]:
        return list(self._commands.values())

    def copy(self) -> "CommandRegistry":
        return CommandRegistry(self._commands.values())

    def __contains__(self, name: str) -> bool:
        return name in self._commands

    def __iter__(self) -> Iterator[CommandSpec]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._commands)


