"""Configuration helpers for the voice relay service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Values are read once at import time; tests reload this module after
    patching the environment.
    """

    elevenlabs_api_key: Optional[str] = os.getenv("ELEVENLABS_API_KEY")
    elevenlabs_api_base_url: str = os.getenv("ELEVENLABS_API_BASE_URL", "https://api.elevenlabs.io")
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_service_role_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    # When unset, caller tokens are decoded without signature verification.
    supabase_jwt_secret: Optional[str] = os.getenv("SUPABASE_JWT_SECRET")
    default_voice_id: str = os.getenv("COACH_DEFAULT_VOICE_ID", "hzLyDn3IrvrdH83BdqUu")
    voice_override_enabled: bool = _env_flag("COACH_VOICE_OVERRIDE_ENABLED")
    agent_id_prefix: str = os.getenv("UPSTREAM_AGENT_ID_PREFIX", "agent_")
    activity_flush_interval_seconds: float = float(os.getenv("ACTIVITY_FLUSH_INTERVAL_SECONDS", "30"))
    conversation_start_delay_seconds: float = float(os.getenv("CONVERSATION_START_DELAY_SECONDS", "1.0"))
    upstream_http_timeout_seconds: float = float(os.getenv("UPSTREAM_HTTP_TIMEOUT_SECONDS", "10"))
    tool_dispatch_timeout_seconds: float = float(os.getenv("TOOL_DISPATCH_TIMEOUT_SECONDS", "15"))
    persistence_timeout_seconds: float = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "10"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def functions_base_url(self) -> Optional[str]:
        """Base URL of the backend's edge functions, if Supabase is configured."""

        if not self.supabase_url:
            return None
        return f"{self.supabase_url.rstrip('/')}/functions/v1"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
