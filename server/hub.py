"""
MODULE OVERVIEW:
The Broadcast Hub: the connection registry plus the event fan-out.

WHAT IS HAPPENING HERE:
The hub owns every live `Connection`. One `asyncio.Lock` guards the registry and
is held for register, unregister and the whole fan-out, so a broadcast can never
observe a half-updated registry or write to a connection that is being removed.

A fan-out delivers to all recipients concurrently, each send bounded by
`delivery_timeout_s`. One slow or dead recipient costs at most one timeout and
never aborts delivery to the others. Recipients whose transport broke are
unregistered once the fan-out is finished and the lock is free again.

Presence events are themselves broadcasts, so they are always emitted after the
lock has been released.
"""

import asyncio
from typing import Dict, List, Tuple
from datetime import datetime, timezone
from loguru import logger
from pydantic import BaseModel

from server.connection import Connection
from server.store import MessageStore
from server.transport import NORMAL_CLOSURE, GOING_AWAY, HEARTBEAT_TIMEOUT_CLOSE_CODE
from shared.config import settings
from shared.errors import DeliveryError, DuplicateIdError, TransportError
from shared.models import (
    BroadcastResult,
    Event,
    HubStats,
    MessageEvent,
    ParticipantInfo,
    Ping,
    PresenceChange,
)


class BroadcastHub:
    def __init__(
        self,
        store: MessageStore | None = None,
        delivery_timeout_s: float = settings.DELIVERY_TIMEOUT_S,
    ):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._cleanup_tasks: set[asyncio.Task] = set()
        self.store = store
        self.delivery_timeout_s = delivery_timeout_s

        self.total_registrations = 0
        self.total_events_dispatched = 0
        self.total_delivery_failures = 0
        self.startup_time = datetime.now(timezone.utc)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connection_ids(self) -> set[str]:
        return set(self._connections)

    # ==========================
    # REGISTRY
    # ==========================
    async def register(self, connection: Connection) -> None:
        cid = connection.connection_id
        async with self._lock:
            if cid in self._connections:
                logger.warning(f"connection_id={cid} event=register reason=duplicate_id")
                raise DuplicateIdError(cid)
            self._connections[cid] = connection
            self.total_registrations += 1

        logger.info(f"connection_id={cid} display_name={connection.display_name!r} event=register reason=accepted")
        await self.broadcast(
            PresenceChange(participant=cid, status="online", display_name=connection.display_name),
            exclude_connection_id=cid,
        )
        await self._send_roster(connection)

    async def _send_roster(self, connection: Connection) -> None:
        """Tell a newcomer who was already here, one online presence per participant."""
        lost = False
        async with self._lock:
            if self._connections.get(connection.connection_id) is not connection:
                return
            others = [c for c in self._connections.values() if c is not connection]
            for other in sorted(others, key=lambda c: c.connected_at):
                frame = PresenceChange(participant=other.connection_id, status="online", display_name=other.display_name)
                try:
                    await self._deliver(connection, frame.model_dump_json())
                except DeliveryError as e:
                    self.total_delivery_failures += 1
                    logger.warning(f"connection_id={connection.connection_id} event=roster_failed reason='{e.reason}'")
                    lost = e.transport_lost
                    break
        if lost:
            await self.unregister(connection.connection_id, reason="transport_lost", expected=connection)

    async def unregister(
        self,
        connection_id: str,
        reason: str = "cleanup",
        close_code: int = NORMAL_CLOSURE,
        announce: bool = True,
        expected: Connection | None = None,
    ) -> bool:
        """
        Remove a connection and close its transport.

        Unknown ids are a no-op. When several detectors race (receive loop,
        failed send, heartbeat) only the first one removes the connection and
        announces it offline; the others get False back.

        Pass `expected` to remove only that session: if the participant has
        since reconnected under the same id, the newer session is left alone.

        The removal runs in its own task, shielded from the caller. A route
        cancelled mid-cleanup still closes the transport and announces the
        participant offline.
        """
        task = asyncio.ensure_future(self._unregister(connection_id, reason, close_code, announce, expected))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)
        return await asyncio.shield(task)

    async def _unregister(
        self,
        connection_id: str,
        reason: str,
        close_code: int,
        announce: bool,
        expected: Connection | None,
    ) -> bool:
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            if expected is not None and connection is not expected:
                logger.debug(f"connection_id={connection_id} event=unregister_skipped reason=newer_session")
                return False
            del self._connections[connection_id]
            connection.mark_disconnected()

        logger.info(f"connection_id={connection_id} event=unregister reason={reason}")
        try:
            await asyncio.wait_for(connection.close(code=close_code, reason=reason), timeout=self.delivery_timeout_s)
        except (TransportError, asyncio.TimeoutError) as e:
            logger.debug(f"connection_id={connection_id} event=close_failed reason='{e!r}'")

        if announce:
            await self.broadcast(
                PresenceChange(participant=connection_id, status="offline", display_name=connection.display_name)
            )
        return True

    async def _drop_lost(self, lost: List[Connection]) -> None:
        for connection in lost:
            await self.unregister(connection.connection_id, reason="transport_lost", expected=connection)

    # ==========================
    # FAN-OUT
    # ==========================
    async def broadcast(self, event: Event, exclude_connection_id: str | None = None) -> BroadcastResult:
        self.total_events_dispatched += 1

        if isinstance(event, MessageEvent):
            await self._persist(event)

        async with self._lock:
            result, lost = await self._fan_out(event, exclude_connection_id)

        logger.debug(
            f"event_id={event.event_id} type={event.type} event=broadcast "
            f"delivered={len(result.delivered)} failed={len(result.failed)}"
        )
        await self._drop_lost(lost)
        return result

    async def _fan_out(self, frame: BaseModel, exclude_connection_id: str | None) -> Tuple[BroadcastResult, List[Connection]]:
        # Caller must hold self._lock.
        recipients = [c for cid, c in self._connections.items() if cid != exclude_connection_id]
        result = BroadcastResult()
        lost: List[Connection] = []
        if not recipients:
            return result, lost

        data = frame.model_dump_json()
        outcomes = await asyncio.gather(
            *(self._deliver(connection, data) for connection in recipients),
            return_exceptions=True,
        )
        for connection, outcome in zip(recipients, outcomes):
            if outcome is None:
                result.delivered.append(connection.connection_id)
            elif isinstance(outcome, DeliveryError):
                self.total_delivery_failures += 1
                result.failed.append(connection.connection_id)
                logger.warning(f"connection_id={connection.connection_id} event=delivery_failed reason='{outcome.reason}'")
                if outcome.transport_lost:
                    lost.append(connection)
            else:
                raise outcome
        return result, lost

    async def send_to(self, connection_id: str, frame: BaseModel) -> bool:
        """Deliver one frame to one connection. Returns False if it is gone or the send failed."""
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            try:
                await self._deliver(connection, frame.model_dump_json())
            except DeliveryError as e:
                self.total_delivery_failures += 1
                logger.warning(f"connection_id={connection_id} event=delivery_failed reason='{e.reason}'")
                lost = e.transport_lost
            else:
                return True
        if lost:
            await self.unregister(connection_id, reason="transport_lost", expected=connection)
        return False

    async def _deliver(self, connection: Connection, data: str) -> None:
        try:
            await asyncio.wait_for(connection.send_text(data), timeout=self.delivery_timeout_s)
        except asyncio.TimeoutError as e:
            raise DeliveryError(connection.connection_id, f"timeout after {self.delivery_timeout_s}s", e) from e
        except TransportError as e:
            raise DeliveryError(connection.connection_id, f"transport error: {e}", e) from e
        except Exception as e:
            raise DeliveryError(connection.connection_id, f"unexpected error: {e!r}", e) from e

    async def _persist(self, message: MessageEvent) -> None:
        if self.store is None:
            return
        try:
            await asyncio.wait_for(self.store.save(message), timeout=self.delivery_timeout_s)
        except Exception as e:
            logger.error(f"event_id={message.event_id} event=store_failed reason='{e!r}'")

    # ==========================
    # HEARTBEAT
    # ==========================
    def touch(self, connection_id: str, expected: Connection | None = None) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or (expected is not None and connection is not expected):
            return False
        connection.touch()
        return True

    async def ping_all(self) -> BroadcastResult:
        async with self._lock:
            result, lost = await self._fan_out(Ping(), None)
        await self._drop_lost(lost)
        return result

    async def expire_stale(self, timeout_s: float, now: datetime | None = None) -> List[str]:
        """Unregister every connection silent for longer than `timeout_s`."""
        async with self._lock:
            stale = [c for c in self._connections.values() if c.idle_seconds(now) > timeout_s]

        expired = []
        for connection in stale:
            removed = await self.unregister(
                connection.connection_id,
                reason="heartbeat_timeout",
                close_code=HEARTBEAT_TIMEOUT_CLOSE_CODE,
                expected=connection,
            )
            if removed:
                expired.append(connection.connection_id)
        return expired


    # ==========================
    # HISTORY
    # ==========================
    async def replay_history(self, connection_id: str, limit: int) -> int:
        """Send the most recent stored messages to one connection, oldest first."""
        if self.store is None or limit <= 0:
            return 0
        try:
            messages = await asyncio.wait_for(self.store.recent(limit), timeout=self.delivery_timeout_s)
        except Exception as e:
            logger.error(f"connection_id={connection_id} event=history_failed reason='{e!r}'")
            return 0

        sent = 0
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return 0
            for message in messages:
                try:
                    await self._deliver(connection, message.model_dump_json())
                except DeliveryError as e:
                    self.total_delivery_failures += 1
                    logger.warning(f"connection_id={connection_id} event=history_failed reason='{e.reason}'")
                    break
                sent += 1
        return sent

    # ==========================
    # LIFECYCLE & METRICS
    # ==========================
    async def close_all(self, reason: str = "server_shutdown") -> int:
        closed = 0
        for cid in list(self._connections):
            if await self.unregister(cid, reason=reason, close_code=GOING_AWAY, announce=False):
                closed += 1
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)
        return closed

    def participants(self) -> List[ParticipantInfo]:
        return [c.info() for c in sorted(self._connections.values(), key=lambda c: c.connected_at)]

    def get_stats(self) -> HubStats:
        return HubStats(
            active_connections=len(self._connections),
            total_registrations=self.total_registrations,
            total_events_dispatched=self.total_events_dispatched,
            total_delivery_failures=self.total_delivery_failures,
            uptime_s=(datetime.now(timezone.utc) - self.startup_time).total_seconds(),
            server_time=datetime.now(timezone.utc)
        )
