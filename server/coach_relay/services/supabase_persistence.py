"""Supabase persistence helpers for coach lookups and conversation history."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from supabase import Client, create_client

from ..config import Settings, settings as default_settings
from ..models.schemas import ConversationHistoryRecord

logger = logging.getLogger(__name__)


class SupabasePersistence:
    """Lightweight wrapper around the Supabase client for the relay's reads and upserts."""

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or default_settings
        self._enabled = bool(self._settings.supabase_url and self._settings.supabase_service_role_key)
        self._client: Client | None = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        """Return whether Supabase persistence is configured."""

        return self._enabled

    def _ensure_client(self) -> Client:
        if not self._enabled:
            raise RuntimeError("Supabase credentials missing; persistence disabled")
        if self._client is None:
            self._client = create_client(self._settings.supabase_url, self._settings.supabase_service_role_key)
        return self._client

    async def _execute(self, fn: Callable[[Client], Any]) -> Any:
        if not self._enabled:
            return None

        timeout = self._settings.persistence_timeout_seconds
        try:
            # Only client construction is serialised; queries from different sessions run side by side.
            async with self._lock:
                client = self._ensure_client()
            return await asyncio.wait_for(asyncio.to_thread(fn, client), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Supabase operation timed out after {timeout}s")
            return None
        except Exception:
            logger.exception("Supabase persistence operation failed")
            return None

    async def fetch_coach_agent_id(self, coach_id: str) -> Optional[str]:
        """Return the upstream agent id configured for ``coach_id``, if any."""

        if not self._enabled:
            logger.warning(f"Supabase not configured; cannot resolve coach {coach_id}")
            return None

        result = await self._execute(
            lambda client: client.table("coaches").select("agent_id").eq("id", coach_id).limit(1).execute()
        )
        rows = getattr(result, "data", None)
        if isinstance(rows, list) and rows:
            first = rows[0]
            if isinstance(first, dict):
                agent_id = first.get("agent_id")
                if isinstance(agent_id, str) and agent_id:
                    return agent_id
        return None

    async def upsert_conversation_history(self, record: ConversationHistoryRecord) -> bool:
        """Upsert the (user, agent) conversation row; return whether it was written."""

        if not self._enabled:
            return False

        data = record.model_dump(mode="json")
        result = await self._execute(
            lambda client: client.table("conversation_history")
            .upsert(data, on_conflict="user_id,agent_id")
            .execute()
        )
        return result is not None
