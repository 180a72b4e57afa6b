"""
MODULE OVERVIEW:
One live client session, as seen by the hub.

WHAT IS HAPPENING HERE:
A `Connection` is a tiny state machine: it is born CONNECTED when the hub
registers it and moves to DISCONNECTED exactly once, when the hub removes it.
There is no way back. A reconnecting client gets a brand new Connection.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel

from server.transport import Transport, NORMAL_CLOSURE
from shared.errors import TransportError
from shared.models import ParticipantInfo, utcnow


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(eq=False)
class Connection:
    connection_id: str
    display_name: str
    transport: Transport
    connected_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    state: ConnectionState = ConnectionState.CONNECTED

    @property
    def alive(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def touch(self) -> None:
        self.last_seen = utcnow()

    def idle_seconds(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.last_seen).total_seconds()

    def mark_disconnected(self) -> bool:
        """Returns False if the connection was already disconnected."""
        if self.state is ConnectionState.DISCONNECTED:
            return False
        self.state = ConnectionState.DISCONNECTED
        return True

    async def send(self, frame: BaseModel) -> None:
        await self.send_text(frame.model_dump_json())

    async def send_text(self, data: str) -> None:
        if not self.alive:
            raise TransportError(f"connection {self.connection_id} is disconnected")
        await self.transport.send(data)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self.transport.close(code=code, reason=reason)

    def info(self) -> ParticipantInfo:
        return ParticipantInfo(
            connection_id=self.connection_id,
            display_name=self.display_name,
            connected_at=self.connected_at,
            last_seen=self.last_seen,
        )
