"""Resolve coach references to upstream agent ids."""
from __future__ import annotations

import logging
from typing import Optional, Protocol

from ..exceptions import CoachNotFound

logger = logging.getLogger(__name__)


class CoachStore(Protocol):
    async def fetch_coach_agent_id(self, coach_id: str) -> Optional[str]: ...


class CoachDirectory:
    """Maps a ``coachId`` to the voice agent that backs it.

    References already in the vendor's native format (``agent_...``) are used
    as-is; anything else is looked up in the ``coaches`` table.
    """

    def __init__(self, store: CoachStore, agent_id_prefix: str = "agent_") -> None:
        self._store = store
        self._prefix = agent_id_prefix

    def is_native_agent_id(self, reference: str) -> bool:
        return bool(self._prefix) and reference.startswith(self._prefix)

    async def resolve(self, coach_reference: str) -> str:
        if self.is_native_agent_id(coach_reference):
            logger.info(f"Using coachId directly as agentId: {coach_reference}")
            return coach_reference

        agent_id = await self._store.fetch_coach_agent_id(coach_reference)
        if not agent_id:
            logger.error(f"Coach {coach_reference} not found or missing agent_id")
            raise CoachNotFound("Coach not found or missing agent_id")
        logger.info(f"Resolved coach {coach_reference} to agent {agent_id}")
        return agent_id
