"""Session establishment: validate the upgrade request and prepare the upstream."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

from ..config import Settings, settings as default_settings
from ..exceptions import MissingCoachReference
from .coach_directory import CoachDirectory
from .identity import resolve_caller_identity

logger = logging.getLogger(__name__)


class SignedUrlProvider(Protocol):
    async def get_signed_url(self, agent_id: str) -> str: ...


@dataclass(frozen=True, slots=True)
class SessionPlan:
    """Everything resolved before either side of the relay is opened."""

    coach_reference: str
    agent_id: str
    voice_id: str
    voice_explicit: bool
    user_id: Optional[str]
    signed_url: str


async def establish_session(
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
    *,
    directory: CoachDirectory,
    upstream: SignedUrlProvider,
    config: Settings | None = None,
) -> SessionPlan:
    """Resolve the coach, the caller and a signed upstream URL.

    Raises ``MissingCoachReference``, ``CoachNotFound`` or ``UpstreamUnavailable``;
    nothing is opened or persisted on failure.
    """

    cfg = config or default_settings
    coach_reference = (query_params.get("coachId") or "").strip()
    logger.info(f"Query param coachId: {coach_reference or None}")
    if not coach_reference:
        raise MissingCoachReference("Missing coachId")

    requested_voice = (query_params.get("voiceId") or "").strip()
    voice_id = requested_voice or cfg.default_voice_id

    agent_id = await directory.resolve(coach_reference)
    user_id = resolve_caller_identity(headers.get("authorization"), query_params.get("token"), cfg)
    signed_url = await upstream.get_signed_url(agent_id)

    return SessionPlan(
        coach_reference=coach_reference,
        agent_id=agent_id,
        voice_id=voice_id,
        voice_explicit=bool(requested_voice),
        user_id=user_id,
        signed_url=signed_url,
    )
