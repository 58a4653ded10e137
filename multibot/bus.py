import asyncio
import dataclasses as dc
import enum
import logging
import time
from typing import TYPE_CHECKING, Any, List, Optional

from multibot.errors import HandlerTimeout, RecipientUnavailable
from multibot.registry import ALL, AgentRegistry, Selector
from multibot.signals import message_delivered
from multibot.utils.asyncio import call_with_timeout

if TYPE_CHECKING:
    from multibot.agent import Agent, AgentIdentity


LOGGER = logging.getLogger(__name__)

DIRECT = "direct"
BROADCAST = "broadcast"


class DeliveryStatus(enum.Enum):
    DELIVERED = "delivered"
    RECIPIENT_UNAVAILABLE = "recipient_unavailable"
    FAILED = "failed"


@dc.dataclass(frozen=True)
class AgentMessage:
    """
    One message between agents. Exists only while it is being delivered.
    """
    sender: "AgentIdentity"
    recipient: str
    payload: Any
    message_type: str = DIRECT


@dc.dataclass(frozen=True)
class DeliveryResult:
    """ """
    recipient: str
    status: DeliveryStatus
    error: Optional[BaseException] = None
    duration: Optional[float] = None

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


class MessageBus:
    """
    Direct and broadcast delivery between live agents. At most once:
    nothing is queued, retried or persisted. The recipient's hook is
    awaited directly, without taking any agent's event lock, so two
    agents messaging each other from their handlers cannot deadlock.
    """
    def __init__(self, registry: AgentRegistry) -> None:
        self.registry = registry

    async def send_to_agent(
        self,
        sender: "AgentIdentity",
        recipient_name: str,
        payload: Any,
    ) -> DeliveryResult:
        recipient = self.registry.get(recipient_name)
        if recipient is None:
            LOGGER.debug("%s -> %s: recipient unavailable", sender.name, recipient_name)
            return DeliveryResult(
                recipient_name,
                DeliveryStatus.RECIPIENT_UNAVAILABLE,
                RecipientUnavailable(recipient_name),
            )
        return await self._deliver(recipient, AgentMessage(sender, recipient_name, payload, DIRECT))

    async def broadcast_to_agents(
        self,
        sender: "AgentIdentity",
        selector: Selector = ALL,
        payload: Any = None,
    ) -> List[DeliveryResult]:
        """
        Deliver `payload` to every live agent matching `selector`, other
        than the sender. Deliveries run concurrently and independently.
        """
        recipients = [
            agent for agent in self.registry.select(selector)
            if agent.name != sender.name
        ]
        if not recipients:
            LOGGER.debug("Broadcast from %s matched no agents", sender.name)
            return []

        return list(await asyncio.gather(*(
            self._deliver(agent, AgentMessage(sender, agent.name, payload, BROADCAST))
            for agent in recipients
        )))

    async def _deliver(self, recipient: "Agent", message: AgentMessage) -> DeliveryResult:
        if message.message_type == BROADCAST:
            hook = recipient.receive_broadcast
        else:
            hook = recipient.receive_message

        timeout = recipient.settings.handler_timeout
        status, error = DeliveryStatus.DELIVERED, None
        started = time.monotonic()
        try:
            await call_with_timeout(hook, message.payload, message.sender, timeout=timeout)
        except asyncio.TimeoutError:
            error = HandlerTimeout(f"{message.message_type} hook of {recipient.name}", timeout)
            status = DeliveryStatus.FAILED
            recipient.logger.error(
                "Delivery from %s failed: %s: %s",
                message.sender.name, type(error).__name__, error,
            )
        except Exception as err:
            error = err
            status = DeliveryStatus.FAILED
            recipient.logger.exception(
                "Delivery from %s failed: %s: %s",
                message.sender.name, type(err).__name__, err,
            )

        result = DeliveryResult(recipient.name, status, error, time.monotonic() - started)
        message_delivered.send(self, message=message, result=result)
        return result
