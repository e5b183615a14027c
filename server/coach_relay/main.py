"""FastAPI application entrypoint for the coach voice relay."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request

from .config import settings
from .exceptions import RelayError, generic_exception_handler, relay_exception_handler
from .models.schemas import HealthResponse
from .routers import realtime
from .services.relay import RelayManager

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(relay_manager: Optional[RelayManager] = None) -> FastAPI:
    """Instantiate and configure the FastAPI application.

    When ``relay_manager`` is omitted one is built from settings during
    startup, sharing a single ``httpx.AsyncClient`` for vendor and backend calls.
    """

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        http_client: httpx.AsyncClient | None = None
        if relay_manager is None:
            http_client = httpx.AsyncClient()
            application.state.relay_manager = RelayManager.from_settings(http_client, settings)
        logger.info("Coach voice relay starting")
        try:
            yield
        finally:
            if http_client is not None:
                await http_client.aclose()
            logger.info("Coach voice relay stopped")

    application = FastAPI(
        title="Coach Voice Relay",
        description="Relays browser voice sessions to ElevenLabs conversational agents.",
        version="0.1.0",
        lifespan=lifespan,
    )
    if relay_manager is not None:
        application.state.relay_manager = relay_manager

    application.add_exception_handler(RelayError, relay_exception_handler)
    application.add_exception_handler(Exception, generic_exception_handler)
    application.include_router(realtime.router)

    @application.get("/", response_model=HealthResponse)
    async def root(request: Request) -> HealthResponse:
        """Lightweight health endpoint for service discovery."""
        manager: RelayManager | None = getattr(request.app.state, "relay_manager", None)
        active = len(manager.active_sessions) if manager is not None else 0
        return HealthResponse(service="coach-voice-relay", status="ok", active_sessions=active)

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        # Browser audio frames are small; this bounds misbehaving clients.
        ws_max_size=16 * 1024 * 1024,
    )
