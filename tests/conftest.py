from typing import Iterable, List, Tuple

import pytest

from multibot.events import ProtocolClient, message_event
from multibot.runtime import Runtime


ROOM = "!room:example.org"
DM_ROOM = "!dm:example.org"
ALICE = "@alice:example.org"


class FakeClient(ProtocolClient):
    """
    Records everything an agent sends instead of talking to a homeserver
    """
    def __init__(
        self,
        user_id: str = "@bot:example.org",
        forbidden: Iterable[Tuple[str, str]] = (),
    ) -> None:
        self.user_id = user_id
        self.forbidden = set(forbidden)
        self.sent: List[Tuple[str, str, str]] = []

    async def send_notice(self, room_id: str, text: str) -> None:
        self.sent.append(("notice", room_id, text))

    async def send_text(self, room_id: str, text: str) -> None:
        self.sent.append(("text", room_id, text))

    def can_send(self, room_id: str, event_type: str) -> bool:
        return (room_id, event_type) not in self.forbidden

    @property
    def texts(self) -> List[str]:
        return [text for _, _, text in self.sent]


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def make_event():

    def make(body, room_id=ROOM, sender=ALICE, is_direct=False, **kwargs):
        if is_direct and room_id == ROOM:
            room_id = DM_ROOM
        return message_event(
            body,
            room_id=room_id,
            sender=sender,
            is_direct=is_direct,
            **kwargs
        )

    return make


@pytest.fixture
async def runtime():
    runtime = Runtime()
    yield runtime
    await runtime.close()
