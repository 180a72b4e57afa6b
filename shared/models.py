"""
MODULE OVERVIEW:
The strictly typed data structures shared by the hub server and the chat client,
powered by Pydantic v2.

WHAT IS HAPPENING HERE:
An `Event` is a tagged variant. The `type` field is the tag, so a single
`TypeAdapter` can turn any JSON frame back into the right class. Events are
frozen: once the hub starts fanning one out, nobody can mutate it under the
feet of the other recipients.

Control frames (`Ping`, `ErrorNotice`) travel over the same socket but are not
events: they are never persisted and never broadcast on behalf of a participant.
"""
from typing import Annotated, Literal, Union
from uuid import uuid4
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from shared.config import settings

# WebSocket close codes shared by the hub and the client.
NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
HEARTBEAT_TIMEOUT_CLOSE_CODE = 4408
DUPLICATE_ID_CLOSE_CODE = 4409


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Frame(BaseModel):
    model_config = ConfigDict(frozen=True)


# ==========================
# EVENTS (fanned out by the hub)
# ==========================
class _BaseEvent(_Frame):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)


class MessageEvent(_BaseEvent):
    type: Literal["message"] = "message"
    sender: str
    text: str
    sender_name: str | None = None


class TypingNotice(_BaseEvent):
    type: Literal["typing"] = "typing"
    sender: str
    sender_name: str | None = None


class PresenceChange(_BaseEvent):
    type: Literal["presence"] = "presence"
    participant: str
    status: Literal["online", "offline"]
    display_name: str | None = None


Event = Annotated[Union[MessageEvent, TypingNotice, PresenceChange], Field(discriminator="type")]

# ==========================
# CONTROL FRAMES (server -> one client)
# ==========================
class Ping(_Frame):
    type: Literal["ping"] = "ping"
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorNotice(_Frame):
    type: Literal["error"] = "error"
    detail: str


ServerFrame = Annotated[
    Union[MessageEvent, TypingNotice, PresenceChange, Ping, ErrorNotice],
    Field(discriminator="type"),
]
server_frame_adapter: TypeAdapter = TypeAdapter(ServerFrame)

# ==========================
# INBOUND (client -> server)
# ==========================
class SendMessage(_Frame):
    type: Literal["message"]
    text: str = Field(min_length=1, max_length=settings.MAX_MESSAGE_LENGTH)


class StartTyping(_Frame):
    type: Literal["typing"]


class Pong(_Frame):
    type: Literal["pong"]


ClientFrame = Annotated[Union[SendMessage, StartTyping, Pong], Field(discriminator="type")]
client_frame_adapter: TypeAdapter = TypeAdapter(ClientFrame)

# ==========================
# READ MODELS (ops endpoints)
# ==========================
class ParticipantInfo(BaseModel):
    connection_id: str
    display_name: str
    connected_at: datetime
    last_seen: datetime


class BroadcastResult(BaseModel):
    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class HubStats(BaseModel):
    active_connections: int
    total_registrations: int
    total_events_dispatched: int
    total_delivery_failures: int
    uptime_s: float
    server_time: datetime
