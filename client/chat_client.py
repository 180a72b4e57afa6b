"""
MODULE OVERVIEW:
The terminal chat client.

WHAT IS HAPPENING HERE:
We use the `websockets` library. The receive loop runs inside `connect()`: it
answers server pings with a pong (that is how the hub knows we are alive) and
hands every other frame to the registered callback. Sending happens from
whatever task calls `send_message()`, over the same socket.
"""

import asyncio
import json
import uuid
from typing import Awaitable, Callable
from urllib.parse import urlencode

import websockets
from loguru import logger
from pydantic import ValidationError

from shared.client_utils import make_client_stats, with_reconnect
from shared.models import ErrorNotice, Ping, server_frame_adapter


class ChatClient:
    def __init__(self, display_name: str, server_base_url: str, connection_id: str | None = None):
        self.display_name = display_name
        self.connection_id = connection_id or f"{display_name.lower().replace(' ', '-')}-{uuid.uuid4().hex[:8]}"
        self.server_base_url = server_base_url.rstrip('/')
        query = urlencode({"connection_id": self.connection_id, "display_name": self.display_name})
        ws_base = self.server_base_url.replace('http://', 'ws://').replace('https://', 'wss://')
        self.ws_url = f"{ws_base}/ws/chat?{query}"

        self.on_event_callback: Callable[[object], Awaitable[None]] | None = None
        self.on_status_change_callback: Callable[[str], Awaitable[None]] | None = None

        self.stats = make_client_stats()
        self._ws = None
        self._connected = asyncio.Event()

    @property
    def events_received(self): return self.stats["events_received"]

    @property
    def reconnect_count(self): return self.stats["reconnect_count"]

    @property
    def messages_sent(self): return self.stats["messages_sent"]

    def set_callbacks(self, on_event, on_status_change):
        self.on_event_callback = on_event
        self.on_status_change_callback = on_status_change

    async def _emit_status(self, status: str):
        if self.on_status_change_callback:
            await self.on_status_change_callback(status)

    async def handle_raw(self, raw: str) -> None:
        self.stats["bytes_received"] += len(raw)
        try:
            frame = server_frame_adapter.validate_json(raw)
        except ValidationError as e:
            logger.debug(f"client_id={self.connection_id} event=bad_frame reason='{e.errors()[0]['msg']}'")
            return

        if isinstance(frame, Ping):
            await self._send_json({"type": "pong"})
            return
        if isinstance(frame, ErrorNotice):
            await self._emit_status(f"ERROR: {frame.detail}")
            return

        self.stats["events_received"] += 1
        self.stats["last_event_at"] = frame.timestamp.isoformat()
        if self.on_event_callback:
            await self.on_event_callback(frame)

    async def connect(self) -> None:
        async with websockets.connect(self.ws_url, ping_interval=None) as ws:
            self._ws = ws
            self._connected.set()
            await self._emit_status("ACTIVE")
            try:
                while True:
                    await self.handle_raw(await ws.recv())
            finally:
                self._connected.clear()
                self._ws = None
                await self._emit_status("RECONNECTING")

    async def wait_connected(self, timeout_s: float = 10.0) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout_s)

    async def _send_json(self, payload: dict) -> None:
        if self._ws is None:
            raise ConnectionError("not connected")
        await self._ws.send(json.dumps(payload))

    async def send_message(self, text: str) -> None:
        await self._send_json({"type": "message", "text": text})
        self.stats["messages_sent"] += 1

    async def send_typing(self) -> None:
        await self._send_json({"type": "typing"})

    async def run(self, duration_s: float | None = None) -> None:
        try:
            await with_reconnect(self.connect, self.stats, duration_s, client_id=self.connection_id)
        except asyncio.CancelledError:
            pass
        finally:
            await self._emit_status("CLOSED")
