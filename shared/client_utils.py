import asyncio
import random
from typing import Callable, Awaitable
from loguru import logger
from datetime import datetime, timezone

import websockets

from shared.models import DUPLICATE_ID_CLOSE_CODE

# The hub will refuse these again on retry, so reconnecting is pointless.
FATAL_CLOSE_CODES = frozenset({DUPLICATE_ID_CLOSE_CODE})


def is_fatal_close(error: Exception) -> bool:
    if not isinstance(error, websockets.ConnectionClosed):
        return False
    return error.rcvd is not None and error.rcvd.code in FATAL_CLOSE_CODES


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Keys: events_received, messages_sent, reconnect_count,
          bytes_received, last_event_at, connected_at.
    """
    return {
        "events_received": 0,
        "messages_sent": 0,
        "reconnect_count": 0,
        "bytes_received": 0,
        "last_event_at": None,
        "connected_at": datetime.now(timezone.utc).isoformat()
    }


def backoff_delay(attempt: int, base_delay_s: float = 1.0, max_delay_s: float = 32.0) -> float:
    """Exponential backoff capped at `max_delay_s`, plus up to 10% jitter."""
    delay = min(base_delay_s * (2 ** attempt), max_delay_s)
    return delay + random.uniform(0, delay * 0.1)


async def with_reconnect(
    connect_fn: Callable[[], Awaitable[None]],
    stats: dict,
    duration_s: float | None = None,
    base_delay_s: float = 1.0,
    max_delay_s: float = 32.0,
    client_id: str = "unknown",
) -> None:
    """
    Wraps an async connect function with automatic reconnection.
    `duration_s=None` keeps reconnecting until the caller cancels us.
    A close code in `FATAL_CLOSE_CODES` is re-raised instead of retried.
    """
    loop = asyncio.get_running_loop()
    attempt = 0
    start_time = loop.time()

    def remaining() -> float | None:
        if duration_s is None:
            return None
        return duration_s - (loop.time() - start_time)

    while True:
        left = remaining()
        if left is not None and left <= 0:
            break

        try:
            await asyncio.wait_for(connect_fn(), timeout=left)
            attempt = 0
        except asyncio.TimeoutError:
            # Reached max duration normally
            break
        except (ConnectionError, OSError, websockets.WebSocketException) as e:
            if is_fatal_close(e):
                logger.error(f"client_id={client_id} event=rejected code={e.rcvd.code} reason='{e.rcvd.reason}'")
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay_s, max_delay_s)
            stats["reconnect_count"] += 1
            logger.warning(
                f"client_id={client_id} event=reconnect attempt={attempt} "
                f"delay={delay:.2f}s reason='{e}'"
            )
            left = remaining()
            if left is not None and left <= delay:
                break
            await asyncio.sleep(delay)
