import asyncio
import dataclasses as dc
import logging
from datetime import datetime
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Union,
)

from multibot.builtins import builtin_commands
from multibot.bus import DeliveryResult
from multibot.commands import CommandRegistry, CommandSpec
from multibot.context import ConversationContext, utcnow
from multibot.dispatcher import CommandDispatcher, DispatchResult, Flags
from multibot.errors import StorageFailure
from multibot.events import InboundEvent, ProtocolClient
from multibot.memory import ScopedMemory
from multibot.registry import ALL, Selector
from multibot.router import EventRouter, RouteResult
from multibot.settings import AgentSettings
from multibot.utils.logging import AgentLoggerAdapter

if TYPE_CHECKING:
    from multibot.runtime import Runtime


LOGGER = logging.getLogger(__name__)


@dc.dataclass(frozen=True)
class AgentIdentity:
    """
    Who an agent is for as long as it runs. Capabilities name what it
    answers to, e.g. "command:ping" or "event:m.room.member".
    """
    name: str
    user_id: str
    capabilities: FrozenSet[str] = frozenset()

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


@dc.dataclass(frozen=True)
class EventResult:
    """ """
    event: InboundEvent
    ignored: bool = False
    route: Optional[RouteResult] = None
    dispatch: Optional[DispatchResult] = None
    storage_error: Optional[StorageFailure] = None


class InvocationContext:
    """
    What a command or event handler gets to work with: the event, the
    agent it was delivered to, that agent's memory, the conversation
    with the sender and the bus.
    """
    def __init__(
        self,
        agent: "Agent",
        event: InboundEvent,
        command: Optional[CommandSpec] = None,
        flags: Optional[Flags] = None,
    ) -> None:
        self.agent = agent
        self.event = event
        self.command = command
        self.flags = flags if flags is not None else Flags()
        self.identity = agent.identity
        self.client = agent.client
        self.sender = event.sender
        self.room_id = event.room_id
        self.is_direct = event.is_direct
        self.logger = agent.logger
        self.memory: ScopedMemory = agent.runtime.memory.for_agent(agent.name)
        self.global_memory: ScopedMemory = agent.runtime.memory.shared()
        self._contexts = agent.runtime.contexts

    async def conversation(self) -> ConversationContext:
        return await self._contexts.get_or_create(self.agent.name, self.sender, self.room_id)

    async def update_conversation(
        self,
        update: Union[Mapping[str, Any], Callable[[ConversationContext], Union[None, Awaitable[None]]]],
    ) -> ConversationContext:
        """
        Merge a mapping into the conversation's context map, or apply a
        mutator to the whole record
        """
        if callable(update):
            return await self._contexts.update(self.agent.name, self.sender, self.room_id, update)
        return await self._contexts.update_context(self.agent.name, self.sender, self.room_id, update)

    async def remember(self, key: str, default_fn: Callable[[], Any]) -> Any:
        return await self._contexts.remember(
            self.agent.name, self.sender, self.room_id, key, default_fn
        )

    async def send_to_agent(self, name: str, payload: Any) -> DeliveryResult:
        return await self.agent.runtime.bus.send_to_agent(self.identity, name, payload)

    async def broadcast_to_agents(
        self, selector: Selector = ALL, payload: Any = None
    ) -> List[DeliveryResult]:
        return await self.agent.runtime.bus.broadcast_to_agents(self.identity, selector, payload)

    async def reply(self, text: str, notice: bool = True) -> None:
        if notice:
            await self.client.send_notice(self.room_id, text)
        else:
            await self.client.send_text(self.room_id, text)

    def can_send(self, event_type: str) -> bool:
        return self.client.can_send(self.room_id, event_type)


def _collect_commands(cls: type) -> CommandRegistry:
    registry = CommandRegistry(builtin_commands() if cls.include_builtins else ())
    for klass in reversed(cls.__mro__):
        table = klass.__dict__.get("commands")
        if isinstance(table, CommandRegistry):
            for spec in table:
                registry.register(spec)
    return registry


def _collect_events(cls: type) -> EventRouter:
    subscriptions = []
    for klass in reversed(cls.__mro__):
        table = klass.__dict__.get("events")
        if isinstance(table, EventRouter):
            subscriptions.extend(sorted(table.all(), key=lambda s: s.seq))
    return EventRouter(subscriptions)


class Agent:
    """
    Base class for bots. Subclasses declare their tables in the class
    body:

        class GreeterBot(Agent):
            commands = CommandRegistry([hello])
            events = EventRouter()
            events.subscribe("m.room.member", on_member)

    Tables of base classes are inherited; a subclass command with the
    same name replaces the inherited one. Events for one agent are
    handled one at a time, in the order they arrive.
    """
    commands: CommandRegistry = CommandRegistry()
    events: EventRouter = EventRouter()
    include_builtins: bool = True
    settings_overrides: Mapping[str, Any] = MappingProxyType({})

    dispatcher = CommandDispatcher()

    def __init__(
        self,
        name: str,
        client: ProtocolClient,
        runtime: "Runtime",
        settings: Optional[AgentSettings] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if settings is None:
            settings = AgentSettings()
        self.name = name
        self.client = client
        self.runtime = runtime
        self.settings = settings.merge(self.settings_overrides).merge(overrides)
        self.logger = AgentLoggerAdapter(LOGGER, {"agent": name})

        # Instance tables shadow the class-level declarations
        self.commands = _collect_commands(type(self))
        self.events = _collect_events(type(self))

        capabilities = {f"command:{spec.name}" for spec in self.commands}
        capabilities.update(f"event:{event_type}" for event_type in self.events.event_types())
        self.identity = AgentIdentity(name, client.user_id, frozenset(capabilities))

        self.started_at: Optional[datetime] = None
        self.events_handled = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        if self.started_at is None:
            return "stopped"
        return "busy" if self._lock.locked() else "idle"

    def invocation_context(
        self,
        event: InboundEvent,
        command: Optional[CommandSpec] = None,
        flags: Optional[Flags] = None,
    ) -> InvocationContext:
        return InvocationContext(self, event, command, flags)

    async def handle_event(self, event: InboundEvent) -> EventResult:
        async with self._lock:
            result = await self._handle_event(event)
            self.events_handled += 1
            return result

    async def _handle_event(self, event: InboundEvent) -> EventResult:
        if self.settings.ignore_own and event.sender == self.identity.user_id:
            return EventResult(event, ignored=True)

        storage_error = None
        if event.is_message:
            try:
                await self._record_message(event)
            except StorageFailure as err:
                self.logger.error(
                    "Unable to record message from %s in %s: %s",
                    event.sender, event.room_id, err,
                )
                storage_error = err

        route = await self.events.route(self, event)

        dispatch = None
        if event.is_message:
            dispatch = await self.dispatcher.dispatch(self, event)

        return EventResult(event, route=route, dispatch=dispatch, storage_error=storage_error)

    async def _record_message(self, event: InboundEvent) -> None:
        message = {"sender": event.sender, "body": event.body}
        if event.event_id is not None:
            message["event_id"] = event.event_id
        if event.origin_server_ts is not None:
            message["timestamp"] = event.origin_server_ts
        await self.runtime.contexts.append_message(
            self.name,
            event.sender,
            event.room_id,
            message,
            history_size=self.settings.history_size,
        )

    async def receive_message(self, payload: Any, sender: AgentIdentity) -> None:
        """
        Called by the bus for a direct message from another agent
        """
        self.logger.debug("Message from %s: %r", sender.name, payload)

    async def receive_broadcast(self, payload: Any, sender: AgentIdentity) -> None:
        """
        Called by the bus for a broadcast from another agent
        """
        self.logger.debug("Broadcast from %s: %r", sender.name, payload)

    def uptime(self) -> float:
        if self.started_at is None:
            return 0.
        return (utcnow() - self.started_at).total_seconds()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
