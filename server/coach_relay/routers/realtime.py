"""Realtime voice relay endpoints."""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from ..exceptions import InvalidRequest
from ..services.relay import RelayManager

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.websocket("/voice")
async def realtime_voice_gateway(websocket: WebSocket) -> None:
    """Relay a browser voice session to the coach's ElevenLabs agent.

    Query parameters: ``coachId`` (required), ``voiceId`` and ``token``
    (optional; the ``Authorization`` header wins over ``token``).
    """

    manager: RelayManager = websocket.app.state.relay_manager
    await manager.handle(websocket)


@router.get("/voice")
async def realtime_voice_requires_upgrade() -> None:
    """Plain HTTP requests to the relay are refused."""

    raise InvalidRequest("Expected WebSocket connection")
