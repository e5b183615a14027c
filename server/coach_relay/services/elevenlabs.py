"""ElevenLabs conversational-voice bootstrap: signed URLs and upstream sockets."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
import websockets

from ..config import Settings, settings as default_settings
from ..exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)

SIGNED_URL_PATH = "/v1/convai/conversation/get_signed_url"
# Audio envelopes are small but agent metadata frames can be large.
UPSTREAM_MAX_FRAME_BYTES = 16 * 1024 * 1024


class ElevenLabsClient:
    """Fetches time-limited signed URLs and opens the upstream websocket."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        config: Settings | None = None,
        api_key: Optional[str] = None,
    ) -> None:
        cfg = config or default_settings
        self._http = http
        self._api_key = api_key or cfg.elevenlabs_api_key
        self._base_url = cfg.elevenlabs_api_base_url.rstrip("/")
        self._timeout = cfg.upstream_http_timeout_seconds

    async def get_signed_url(self, agent_id: str) -> str:
        if not self._api_key:
            raise UpstreamUnavailable("ELEVENLABS_API_KEY is not configured")

        try:
            resp = await self._http.get(
                f"{self._base_url}{SIGNED_URL_PATH}",
                params={"agent_id": agent_id},
                headers={"xi-api-key": self._api_key, "Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.error(f"ElevenLabs signed URL request failed: {exc}")
            raise UpstreamUnavailable(f"ElevenLabs API request failed: {exc}") from exc

        if resp.is_error:
            logger.error(f"ElevenLabs API error: {resp.status_code} {resp.text}")
            raise UpstreamUnavailable(f"ElevenLabs API error: {resp.status_code} - {resp.text}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable("ElevenLabs API returned a non-JSON body") from exc

        signed_url = data.get("signed_url") if isinstance(data, dict) else None
        if not isinstance(signed_url, str) or not signed_url:
            raise UpstreamUnavailable("ElevenLabs API response missing signed_url")
        logger.info(f"Got signed URL for agent {agent_id}")
        return signed_url

    async def connect(self, signed_url: str) -> Any:
        """Open the upstream duplex connection for ``signed_url``."""

        try:
            connection = await websockets.connect(signed_url, max_size=UPSTREAM_MAX_FRAME_BYTES)
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as exc:
            logger.error(f"Could not connect to ElevenLabs: {exc}")
            raise UpstreamUnavailable(f"ElevenLabs connection failed: {exc}") from exc
        logger.info("Connected to ElevenLabs")
        return connection
