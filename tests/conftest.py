import asyncio

import pytest

from server.connection import Connection
from server.hub import BroadcastHub
from server.store import InMemoryMessageStore
from shared.errors import TransportError
from shared.models import server_frame_adapter


class FakeTransport:
    """In-memory stand-in for a WebSocket. Records every frame sent to it."""

    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s
        self.close_delay_s = 0.0
        self.broken = False
        self.sent: list[str] = []
        self.close_code: int | None = None

    async def send(self, data: str) -> None:
        if self.broken or self.close_code is not None:
            raise TransportError("socket closed")
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_delay_s:
            await asyncio.sleep(self.close_delay_s)
        self.close_code = code

    def frames(self):
        return [server_frame_adapter.validate_json(raw) for raw in self.sent]

    def frames_of(self, frame_type: str):
        return [f for f in self.frames() if f.type == frame_type]


@pytest.fixture
def store():
    return InMemoryMessageStore(maxlen=50)


@pytest.fixture
def hub(store):
    return BroadcastHub(store=store, delivery_timeout_s=0.2)


@pytest.fixture
def make_connection():
    def _make(connection_id: str, display_name: str | None = None, delay_s: float = 0.0) -> Connection:
        return Connection(connection_id, display_name or connection_id.upper(), FakeTransport(delay_s))
    return _make
