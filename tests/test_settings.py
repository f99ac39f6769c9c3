from __future__ import annotations

import pytest
from arture_client.settings import ClientSettings
from arture_service.app.settings import Settings
from pydantic import ValidationError


def test_csv_env_values_are_split(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARTURE_ENABLED_PROVIDER_NAMES", "openrouter, openai ,placeholder")
    monkeypatch.setenv("ARTURE_OPENAI_MODELS", "gpt-a,gpt-b")

    settings = Settings(_env_file=None)

    assert settings.enabled_provider_names == ["openrouter", "openai", "placeholder"]
    assert settings.openai_models == ["gpt-a", "gpt-b"]


def test_list_values_pass_through() -> None:
    settings = Settings(_env_file=None, enabled_provider_names=["placeholder"])
    assert settings.enabled_provider_names == ["placeholder"]


@pytest.mark.parametrize("field", ["buffer_size", "session_timeout_ms", "heartbeat_interval_ms"])
def test_non_positive_values_are_rejected(field: str) -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: 0})


def test_client_settings_read_prefixed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ARTURE_CLIENT_BASE_URL", "http://arture.test")
    monkeypatch.setenv("ARTURE_CLIENT_FALLBACK_TO_REST", "false")

    settings = ClientSettings(_env_file=None)

    assert settings.base_url == "http://arture.test"
    assert settings.fallback_to_rest is False
    assert settings.timeout_ms == 120_000
    assert settings.idle_timeout_ms is None
