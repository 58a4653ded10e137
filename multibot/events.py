import abc
import dataclasses as dc
from typing import Any, Dict, Optional


MESSAGE_EVENT = "m.room.message"


@dc.dataclass(frozen=True)
class InboundEvent:
    """
    A protocol event as handed over by the transport. The transport is
    responsible for de-duplicating redelivered events.
    """
    type: str
    room_id: str
    sender: str
    content: Dict[str, Any] = dc.field(default_factory=dict)
    event_id: Optional[str] = None
    is_direct: bool = False
    origin_server_ts: Optional[int] = None

    @property
    def is_message(self) -> bool:
        return self.type == MESSAGE_EVENT

    @property
    def body(self) -> Optional[str]:
        body = self.content.get("body")
        if isinstance(body, str):
            return body
        return None


def message_event(
    body: str,
    *,
    room_id: str,
    sender: str,
    is_direct: bool = False,
    event_id: Optional[str] = None,
    origin_server_ts: Optional[int] = None,
) -> InboundEvent:
    return InboundEvent(
        type=MESSAGE_EVENT,
        room_id=room_id,
        sender=sender,
        content={"msgtype": "m.text", "body": body},
        event_id=event_id,
        is_direct=is_direct,
        origin_server_ts=origin_server_ts,
    )


class ProtocolClient(abc.ABC):
    """
    The chat protocol client an agent is bound to
    """
    user_id: str

    @abc.abstractmethod
    async def send_notice(self, room_id: str, text: str) -> None:
        """ """
        raise NotImplementedError

    @abc.abstractmethod
    async def send_text(self, room_id: str, text: str) -> None:
        """ """
        raise NotImplementedError

    def can_send(self, room_id: str, event_type: str) -> bool:
        """
        Whether this client's user may send `event_type` into `room_id`
        """
        return True
