"""
MODULE OVERVIEW:
The FastAPI application factory.

WHAT IS HAPPENING HERE:
We use a `lifespan` context manager. When Uvicorn starts the server we spawn the
heartbeat monitor as a background task. On shutdown we cancel it and close every
chat connection with a "going away" code so clients know to reconnect elsewhere.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio
from contextlib import asynccontextmanager
from loguru import logger

from server.heartbeat import run_heartbeat
from server.hub import BroadcastHub
from server.middleware import RequestContextMiddleware
from server.routes import chat, ops
from server.store import InMemoryMessageStore
from shared.config import settings


def create_app(hub: BroadcastHub | None = None, heartbeat: bool = True) -> FastAPI:
    if hub is None:
        hub = BroadcastHub(store=InMemoryMessageStore(maxlen=settings.HISTORY_SIZE))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        logger.info("Chat broadcast hub starting up...")
        heartbeat_task = None
        if heartbeat:
            heartbeat_task = asyncio.create_task(
                run_heartbeat(hub, settings.HEARTBEAT_INTERVAL_S, settings.HEARTBEAT_TIMEOUT_S)
            )
            logger.info(
                f"Heartbeat monitor started interval={settings.HEARTBEAT_INTERVAL_S}s "
                f"timeout={settings.HEARTBEAT_TIMEOUT_S}s"
            )

        yield

        # SHUTDOWN
        logger.info("Server shutting down. Closing connections...")
        if heartbeat_task is not None:
            heartbeat_task.cancel()
            await asyncio.gather(heartbeat_task, return_exceptions=True)
        closed = await hub.close_all()
        logger.info(f"Shutdown complete. closed={closed}")

    app = FastAPI(
        title="Chat Broadcast Hub",
        description="Real-time chat fan-out over WebSockets",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.hub = hub

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat.router, tags=["Chat"])
    app.include_router(ops.router, tags=["Ops"])
    return app


app = create_app()
