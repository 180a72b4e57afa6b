from starlette.requests import HTTPConnection
from loguru import logger

from server.hub import BroadcastHub


def get_hub(conn: HTTPConnection) -> BroadcastHub:
    """Every route reaches the hub through the app state, never a global."""
    return conn.app.state.hub


def log_connection(event: str, connection_id: str, extra: dict | None = None) -> None:
    """
    Single structured log entry for a connection lifecycle step.
    The WebSocket route calls this on connect, on rejection and on disconnect.
    """
    log_str = f"event={event} connection_id={connection_id}"
    for k, v in (extra or {}).items():
        log_str += f" {k}={v}"
    logger.info(log_str)
