"""
MODULE OVERVIEW:
The transport boundary.

WHAT IS HAPPENING HERE:
The hub never touches a WebSocket directly. It writes text frames to anything
that looks like a `Transport`. `WebSocketTransport` is the production adapter;
it turns every Starlette/WebSocket failure into a `TransportError` so the hub
only has one exception to reason about.
"""
from typing import Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from shared.errors import TransportError
from shared.models import (  # noqa: F401  re-exported for the hub and routes
    DUPLICATE_ID_CLOSE_CODE,
    GOING_AWAY,
    HEARTBEAT_TIMEOUT_CLOSE_CODE,
    NORMAL_CLOSURE,
)


class Transport(Protocol):
    async def send(self, data: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


class WebSocketTransport:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, data: str) -> None:
        if not self.is_open:
            raise TransportError("websocket is not connected")
        try:
            await self.websocket.send_text(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if not self.is_open:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            raise TransportError(str(e) or e.__class__.__name__) from e
