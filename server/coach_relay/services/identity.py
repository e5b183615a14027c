"""Caller identity resolution from bearer tokens."""
from __future__ import annotations

import logging
from typing import Optional

import jwt

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


def extract_token(authorization: Optional[str], query_token: Optional[str]) -> Optional[str]:
    """Prefer the ``Authorization`` header, fall back to the ``token`` query parameter."""

    if authorization:
        token = authorization[len(_BEARER_PREFIX):] if authorization.startswith(_BEARER_PREFIX) else authorization
        token = token.strip()
        if token:
            return token
    if query_token and query_token.strip():
        return query_token.strip()
    return None


def decode_subject(token: str, config: Settings | None = None) -> Optional[str]:
    """Return the ``sub`` claim of ``token`` or ``None`` when it cannot be read.

    Tokens are verified against ``SUPABASE_JWT_SECRET`` when one is configured.
    Failures are never fatal: the session simply runs anonymously.
    """

    cfg = config or default_settings
    try:
        if cfg.supabase_jwt_secret:
            claims = jwt.decode(
                token,
                cfg.supabase_jwt_secret,
                algorithms=["HS256"],
                audience="authenticated",
            )
        else:
            claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError as exc:
        logger.warning(f"Could not decode auth token: {exc}")
        return None

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        logger.warning("Auth token carries no subject claim")
        return None
    return subject


def resolve_caller_identity(
    authorization: Optional[str],
    query_token: Optional[str],
    config: Settings | None = None,
) -> Optional[str]:
    token = extract_token(authorization, query_token)
    if token is None:
        logger.info("No authentication token provided")
        return None
    user_id = decode_subject(token, config)
    if user_id:
        logger.info(f"Authenticated user ID: {user_id}")
    return user_id
