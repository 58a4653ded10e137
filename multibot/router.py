import asyncio
import dataclasses as dc
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional

from multibot.errors import HandlerTimeout
from multibot.events import InboundEvent
from multibot.signals import event_routed, handler_failed
from multibot.utils.asyncio import call_with_timeout

if TYPE_CHECKING:
    from multibot.agent import Agent


LOGGER = logging.getLogger(__name__)

DEFAULT_PRIORITY = 50

ANY_EVENT = "*"


@dc.dataclass(frozen=True)
class Subscription:
    """
    One handler for one event type. `room_id` and `sender` narrow the
    match when set. Higher priorities run first.
    """
    event_type: str
    handler: Callable[..., Any]
    room_id: Optional[str] = None
    sender: Optional[str] = None
    priority: int = DEFAULT_PRIORITY
    seq: int = dc.field(default=0, compare=False)

    @property
    def name(self) -> str:
        return getattr(self.handler, "__name__", repr(self.handler))

    def matches(self, event: InboundEvent) -> bool:
        if self.event_type != ANY_EVENT and self.event_type != event.type:
            return False
        if self.room_id is not None and self.room_id != event.room_id:
            return False
        if self.sender is not None and self.sender != event.sender:
            return False
        return True


@dc.dataclass(frozen=True)
class HandlerFailure:
    """ """
    subscription: Subscription
    error: BaseException


@dc.dataclass(frozen=True)
class RouteResult:
    """ """
    event_type: str
    handled: int = 0
    failures: List[HandlerFailure] = dc.field(default_factory=list)
    duration: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.failures


class EventRouter:
    """
    Non-command event handlers. Every matching handler runs, one after
    another; a handler failing is recorded and the rest still run.
    Handlers are called as `handler(ctx)`, `ctx.event` is the event.
    """
    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._subscriptions: List[Subscription] = []
        self._seq = itertools.count()

        for sub in subscriptions:
            self._add(sub)

    def _add(self, sub: Subscription) -> Subscription:
        sub = dc.replace(sub, seq=next(self._seq))
        self._subscriptions.append(sub)
        # Stable sort keeps subscription order within a priority
        self._subscriptions.sort(key=lambda s: (-s.priority, s.seq))
        return sub

    def subscribe(
        self,
        event_type: str,
        handler: Optional[Callable[..., Any]] = None,
        *,
        room_id: Optional[str] = None,
        sender: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
    ):
        """
        Subscribe `handler` to `event_type`. Without a handler this
        returns a decorator.
        """
        if not event_type:
            raise ValueError("event_type must not be empty")

        def add(f):
            if not callable(f):
                raise TypeError(f"Invalid event handler: {f}")
            return self._add(Subscription(event_type, f, room_id, sender, priority))

        if handler is None:
            def dec(f):
                add(f)
                return f
            return dec

        return add(handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        for idx, sub in enumerate(self._subscriptions):
            if sub.seq == subscription.seq and sub.handler is subscription.handler:
                del self._subscriptions[idx]
                return True
        return False

    def all(self) -> List[Subscription]:
        return list(self._subscriptions)

    def event_types(self) -> List[str]:
        out = []
        for sub in sorted(self._subscriptions, key=lambda s: s.seq):
            if sub.event_type not in out:
                out.append(sub.event_type)
        return out

    def subscriptions_for(self, event: InboundEvent) -> List[Subscription]:
        return [sub for sub in self._subscriptions if sub.matches(event)]

    def copy(self) -> "EventRouter":
        return EventRouter(sorted(self._subscriptions, key=lambda s: s.seq))

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def route(self, agent: "Agent", event: InboundEvent) -> RouteResult:
        subscriptions = self.subscriptions_for(event)
        if not subscriptions:
            return RouteResult(event.type)

        ctx = agent.invocation_context(event)
        timeout = agent.settings.handler_timeout
        started = time.monotonic()
        failures = []
        handled = 0

        for sub in subscriptions:
            try:
                await call_with_timeout(sub.handler, ctx, timeout=timeout)
                handled += 1
            except asyncio.TimeoutError:
                err = HandlerTimeout(f"event handler {sub.name}", timeout)
                agent.logger.error(
                    "Handler %s for %s failed: %s: %s",
                    sub.name, event.type, type(err).__name__, err,
                )
                failures.append(HandlerFailure(sub, err))
                handler_failed.send(agent, kind="event", name=event.type, error=err)
            except Exception as err:
                agent.logger.exception(
                    "Handler %s for %s failed: %s: %s",
                    sub.name, event.type, type(err).__name__, err,
                )
                failures.append(HandlerFailure(sub, err))
                handler_failed.send(agent, kind="event", name=event.type, error=err)

        result = RouteResult(event.type, handled, failures, time.monotonic() - started)
        event_routed.send(agent, event=event, result=result)
        return result
