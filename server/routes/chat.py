"""
MODULE OVERVIEW:
The chat WebSocket route.

WHAT IS HAPPENING HERE:
One task per connected client. The route upgrades the request, hands a
`Connection` to the hub, replays recent history, then sits in a receive loop
translating client frames into hub broadcasts. However the loop ends (client
close, broken socket, heartbeat close, bug) the `finally` block unregisters the
connection, and the hub makes sure that only happens once.
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status
from loguru import logger
from pydantic import ValidationError

from server.connection import Connection
from server.hub import BroadcastHub
from server.identity import resolve_identity
from server.route_utils import get_hub, log_connection
from server.transport import DUPLICATE_ID_CLOSE_CODE, WebSocketTransport
from shared.config import settings
from shared.errors import DuplicateIdError, TransportError
from shared.models import (
    ErrorNotice,
    MessageEvent,
    SendMessage,
    StartTyping,
    TypingNotice,
    client_frame_adapter,
)

router = APIRouter()


async def handle_frame(hub: BroadcastHub, connection: Connection, text: str) -> None:
    cid = connection.connection_id
    if not connection.alive:
        return
    try:
        frame = client_frame_adapter.validate_json(text)
    except ValidationError as e:
        detail = e.errors()[0]["msg"] if e.errors() else "invalid frame"
        logger.warning(f"connection_id={cid} event=bad_frame reason='{detail}'")
        await hub.send_to(cid, ErrorNotice(detail=detail))
        return

    if isinstance(frame, SendMessage):
        exclude = None if settings.ECHO_OWN_MESSAGES else cid
        await hub.broadcast(
            MessageEvent(sender=cid, sender_name=connection.display_name, text=frame.text),
            exclude_connection_id=exclude,
        )
    elif isinstance(frame, StartTyping):
        await hub.broadcast(
            TypingNotice(sender=cid, sender_name=connection.display_name),
            exclude_connection_id=cid,
        )
    # Pong carries nothing beyond the liveness the caller already recorded.


@router.websocket("/ws/chat")
async def chat_endpoint(
    websocket: WebSocket,
    connection_id: str | None = Query(None),
    display_name: str | None = Query(None),
):
    hub = get_hub(websocket)
    try:
        identity = resolve_identity(connection_id, display_name)
    except ValidationError:
        log_connection("reject", connection_id or "-", {"reason": "invalid_identity"})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    cid = identity.connection_id
    await websocket.accept()
    connection = Connection(cid, identity.display_name, WebSocketTransport(websocket))
    try:
        await hub.register(connection)
    except DuplicateIdError as e:
        log_connection("reject", cid, {"reason": "duplicate_id"})
        await websocket.send_text(ErrorNotice(detail=str(e)).model_dump_json())
        await websocket.close(code=DUPLICATE_ID_CLOSE_CODE)
        return

    log_connection("connect", cid, {"display_name": repr(identity.display_name)})
    await hub.replay_history(cid, settings.HISTORY_REPLAY_LIMIT)

    reason = "client_closed"
    try:
        while True:
            text = await websocket.receive_text()
            hub.touch(cid, expected=connection)
            await handle_frame(hub, connection, text)
    except WebSocketDisconnect:
        pass
    except (TransportError, RuntimeError) as e:
        # Starlette raises RuntimeError when receiving on a socket the server already closed.
        reason = "transport_error"
        logger.debug(f"connection_id={cid} event=receive_failed reason='{e}'")
    except Exception:
        reason = "internal_error"
        logger.exception(f"connection_id={cid} event=receive_loop_crashed")
    finally:
        await hub.unregister(cid, reason=reason, expected=connection)
        log_connection("disconnect", cid, {"reason": reason})
