from __future__ import annotations

import importlib

import coach_relay.config as config


def test_settings_reads_relay_tuning(monkeypatch):
    monkeypatch.setenv("ACTIVITY_FLUSH_INTERVAL_SECONDS", "12.5")
    monkeypatch.setenv("CONVERSATION_START_DELAY_SECONDS", "0")
    monkeypatch.setenv("UPSTREAM_AGENT_ID_PREFIX", "agt-")
    monkeypatch.setenv("COACH_VOICE_OVERRIDE_ENABLED", "yes")

    reloaded = importlib.reload(config)

    try:
        assert reloaded.settings.activity_flush_interval_seconds == 12.5
        assert reloaded.settings.conversation_start_delay_seconds == 0.0
        assert reloaded.settings.agent_id_prefix == "agt-"
        assert reloaded.settings.voice_override_enabled is True
    finally:
        monkeypatch.undo()
        importlib.reload(config)


def test_env_flag_parsing(monkeypatch):
    monkeypatch.setenv("SOME_FLAG", "off")
    assert config._env_flag("SOME_FLAG", default=True) is False
    monkeypatch.setenv("SOME_FLAG", "1")
    assert config._env_flag("SOME_FLAG") is True
    monkeypatch.delenv("SOME_FLAG")
    assert config._env_flag("SOME_FLAG", default=True) is True


def test_functions_base_url_follows_supabase_url():
    cfg = config.Settings(supabase_url="https://proj.supabase.co/")
    assert cfg.functions_base_url == "https://proj.supabase.co/functions/v1"

    assert config.Settings(supabase_url=None).functions_base_url is None
