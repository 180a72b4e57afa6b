"""
MODULE OVERVIEW:
Passive disconnect detection.

WHAT IS HAPPENING HERE:
A client whose TCP connection silently died never sends a close frame, so the
receive loop would wait forever. Every `interval_s` we ping all connections and
drop the ones that have not sent anything for `timeout_s`. Clients answer pings
with a pong, and any inbound frame counts as a sign of life.
"""
import asyncio

from loguru import logger

from server.hub import BroadcastHub


async def heartbeat_tick(hub: BroadcastHub, timeout_s: float) -> list[str]:
    expired = await hub.expire_stale(timeout_s)
    if expired:
        logger.info(f"event=heartbeat expired={len(expired)} ids={expired}")
    await hub.ping_all()
    return expired


async def run_heartbeat(hub: BroadcastHub, interval_s: float, timeout_s: float) -> None:
    """Runs until cancelled. A failing tick is logged and the loop carries on."""
    try:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await heartbeat_tick(hub, timeout_s)
            except Exception as e:
                logger.error(f"event=heartbeat reason='{e!r}'")
    except asyncio.CancelledError:
        logger.debug("Heartbeat monitor cancelled")
        raise
