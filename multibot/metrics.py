"""
Per-agent counts and timings of command, event and bus operations,
collected from the runtime's signals
"""
import collections
import dataclasses as dc
import logging
import math
import threading
from datetime import datetime
from typing import Any, Callable, Counter, Deque, Dict, List, Optional, Tuple

import blinker

from multibot.context import utcnow
from multibot.dispatcher import Outcome
from multibot.signals import command_dispatched, event_routed, message_delivered


LOGGER = logging.getLogger(__name__)

COMMANDS = "commands"
EVENTS = "events"
MESSAGES = "messages"

DURATION_WINDOW = 1000

MIN_OPERATIONS_FOR_HEALTH = 10

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"

# Outcomes where the command handler actually ran
INVOKED = frozenset({Outcome.HANDLED, Outcome.HANDLER_FAILED, Outcome.HANDLER_TIMEOUT})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def _percent(part: int, total: int) -> float:
    if not total:
        return 0.
    return round(part / total * 100, 2)


def health_status(total: int, successes: int) -> str:
    if total < MIN_OPERATIONS_FOR_HEALTH:
        return UNKNOWN
    rate = successes / total * 100
    if rate >= 95:
        return HEALTHY
    if rate >= 80:
        return DEGRADED
    return UNHEALTHY


@dc.dataclass
class OperationStats:
    """
    Counts for one operation of one agent. Durations are kept in seconds
    for the most recent DURATION_WINDOW runs.
    """
    total: int = 0
    successes: int = 0
    errors: int = 0
    errors_by_kind: Counter[str] = dc.field(default_factory=collections.Counter)
    durations: Deque[float] = dc.field(
        default_factory=lambda: collections.deque(maxlen=DURATION_WINDOW)
    )
    last_operation_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None

    def record(
        self,
        ok: bool,
        duration: Optional[float] = None,
        error_kind: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        if now is None:
            now = utcnow()
        self.total += 1
        self.last_operation_at = now
        if duration is not None:
            self.durations.append(duration)
        if ok:
            self.successes += 1
        else:
            self.errors += 1
            self.last_error_at = now
            self.errors_by_kind[error_kind or "unknown"] += 1

    @property
    def success_rate(self) -> float:
        return _percent(self.successes, self.total)

    def duration_stats(self) -> Dict[str, float]:
        values = sorted(self.durations)
        if not values:
            return {"avg_ms": 0., "min_ms": 0., "max_ms": 0., "p95_ms": 0.}
        # Small samples report the slowest run as the 95th percentile
        if len(values) >= 20:
            p95 = values[math.ceil(len(values) * 0.95) - 1]
        else:
            p95 = values[-1]
        return {
            "avg_ms": round(sum(values) / len(values) * 1000, 2),
            "min_ms": round(values[0] * 1000, 2),
            "max_ms": round(values[-1] * 1000, 2),
            "p95_ms": round(p95 * 1000, 2),
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successes": self.successes,
            "errors": self.errors,
            "success_rate": self.success_rate,
            "errors_by_kind": dict(self.errors_by_kind),
            **self.duration_stats(),
            "last_operation_at": _iso(self.last_operation_at),
            "last_error_at": _iso(self.last_error_at),
        }


OperationKey = Tuple[str, str, str]


class Metrics:
    """
    Aggregates operation outcomes per agent:

    * commands whose handler ran, keyed by command name; messages the
      dispatcher turned away (unknown command, bad arguments, ...) are
      only counted by outcome under `rejected`
    * routed events, keyed by event type
    * bus deliveries, keyed by message type and counted for the recipient

    `accept` limits command and event recording to the agents it returns
    True for. Signals are process-wide, so a runtime passes a test for
    its own agents.
    """
    def __init__(self, accept: Optional[Callable[[Any], bool]] = None) -> None:
        self._accept = accept
        self._lock = threading.Lock()
        self._operations: Dict[OperationKey, OperationStats] = {}
        self._rejected: Dict[str, Counter[str]] = collections.defaultdict(collections.Counter)
        self._connected = False

    def connect(self, bus: Any = blinker.ANY) -> None:
        if self._connected:
            return
        command_dispatched.connect(self._on_command_dispatched)
        event_routed.connect(self._on_event_routed)
        message_delivered.connect(self._on_message_delivered, sender=bus)
        self._connected = True

    def disconnect(self) -> None:
        command_dispatched.disconnect(self._on_command_dispatched)
        event_routed.disconnect(self._on_event_routed)
        message_delivered.disconnect(self._on_message_delivered)
        self._connected = False

    def record(
        self,
        agent: str,
        component: str,
        operation: str,
        ok: bool,
        duration: Optional[float] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        key = (agent, component, operation)
        with self._lock:
            stats = self._operations.get(key)
            if stats is None:
                stats = self._operations[key] = OperationStats()
            stats.record(ok, duration, error_kind)

    def _accepts(self, agent: Any) -> bool:
        return self._accept is None or self._accept(agent)

    def _on_command_dispatched(self, agent, **kwargs) -> None:
        if not self._accepts(agent):
            return
        result = kwargs["result"]
        if result.outcome not in INVOKED:
            with self._lock:
                self._rejected[agent.name][result.outcome.value] += 1
            return
        ok = result.outcome is Outcome.HANDLED
        self.record(
            agent.name,
            COMMANDS,
            result.command,
            ok,
            result.duration,
            None if ok else type(result.error).__name__,
        )

    def _on_event_routed(self, agent, **kwargs) -> None:
        if not self._accepts(agent):
            return
        result = kwargs["result"]
        error_kind = None
        if result.failures:
            error_kind = type(result.failures[0].error).__name__
        self.record(agent.name, EVENTS, result.event_type, result.ok, result.duration, error_kind)

    def _on_message_delivered(self, bus, **kwargs) -> None:
        message = kwargs["message"]
        result = kwargs["result"]
        error_kind = None if result.error is None else type(result.error).__name__
        self.record(
            message.recipient,
            MESSAGES,
            message.message_type,
            result.delivered,
            result.duration,
            error_kind,
        )

    def agents(self) -> List[str]:
        with self._lock:
            names = {agent for agent, _, _ in self._operations}
            names.update(self._rejected)
        return sorted(names)

    def agent_metrics(self, agent: str) -> Dict[str, Any]:
        components: Dict[str, Dict[str, Any]] = {}
        total = successes = errors = 0

        with self._lock:
            for (name, component, operation), stats in sorted(self._operations.items()):
                if name != agent:
                    continue
                components.setdefault(component, {})[operation] = stats.summary()
                total += stats.total
                successes += stats.successes
                errors += stats.errors
            rejected = dict(self._rejected.get(agent, {}))

        return {
            "agent": agent,
            "total_operations": total,
            "successes": successes,
            "errors": errors,
            "success_rate": _percent(successes, total),
            "health": health_status(total, successes),
            "rejected": rejected,
            "components": components,
        }

    def health_summary(self) -> Dict[str, Any]:
        agents = [self.agent_metrics(name) for name in self.agents()]
        counts = collections.Counter(agent["health"] for agent in agents)
        total = sum(agent["total_operations"] for agent in agents)
        successes = sum(agent["successes"] for agent in agents)

        return {
            "total_agents": len(agents),
            HEALTHY: counts[HEALTHY],
            DEGRADED: counts[DEGRADED],
            UNHEALTHY: counts[UNHEALTHY],
            UNKNOWN: counts[UNKNOWN],
            "total_operations": total,
            "success_rate": _percent(successes, total),
            "agents": [
                {
                    "agent": agent["agent"],
                    "health": agent["health"],
                    "success_rate": agent["success_rate"],
                    "total_operations": agent["total_operations"],
                }
                for agent in agents
            ],
        }

    def reset(self, agent: Optional[str] = None) -> None:
        with self._lock:
            if agent is None:
                self._operations.clear()
                self._rejected.clear()
                return
            for key in [key for key in self._operations if key[0] == agent]:
                del self._operations[key]
            self._rejected.pop(agent, None)
        LOGGER.info("Reset metrics for %s", agent)
