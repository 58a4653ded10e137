import dataclasses as dc
from typing import Any, FrozenSet, Mapping, Optional


@dc.dataclass(frozen=True)
class AgentSettings:
    """
    Per-agent behaviour. Runtime defaults are overridden per agent with
    `merge`.
    """
    command_prefix: str = "!"
    ignore_own: bool = True
    handler_timeout: Optional[float] = None
    disabled_commands: FrozenSet[str] = frozenset()
    history_size: int = 20

    def __post_init__(self) -> None:
        if not self.command_prefix:
            raise ValueError("command_prefix must not be empty")
        if self.handler_timeout is not None and self.handler_timeout <= 0:
            raise ValueError("handler_timeout must be positive")
        if self.history_size < 1:
            raise ValueError("history_size must be at least 1")
        # Accept any iterable of names
        object.__setattr__(
            self, "disabled_commands", frozenset(self.disabled_commands)
        )

    def merge(self, overrides: Optional[Mapping[str, Any]] = None) -> "AgentSettings":
        if not overrides:
            return self
        known = {field.name for field in dc.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown agent settings: {', '.join(sorted(unknown))}")
        return dc.replace(self, **overrides)


@dc.dataclass(frozen=True)
class RuntimeConfig:
    """ """
    database_url: Optional[str] = None
    probe_host: str = "127.0.0.1"
    probe_port: Optional[int] = None
    agent_settings: AgentSettings = dc.field(default_factory=AgentSettings)
