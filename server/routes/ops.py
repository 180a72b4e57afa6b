"""
Operational HTTP endpoints: health, stats, who is online, recent history.
"""
from fastapi import APIRouter, Query, Request

from server.route_utils import get_hub
from shared.config import settings
from shared.models import HubStats, MessageEvent, ParticipantInfo

router = APIRouter()


@router.get("/healthz")
async def health_check():
    return {"status": "ok"}


@router.get("/stats", response_model=HubStats)
async def get_stats(request: Request):
    return get_hub(request).get_stats()


@router.get("/participants", response_model=list[ParticipantInfo])
async def list_participants(request: Request):
    return get_hub(request).participants()


@router.get("/history", response_model=list[MessageEvent])
async def get_history(request: Request, limit: int = Query(settings.HISTORY_REPLAY_LIMIT, ge=1, le=settings.HISTORY_SIZE)):
    hub = get_hub(request)
    if hub.store is None:
        return []
    return await hub.store.recent(limit)
