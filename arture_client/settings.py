from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ARTURE_CLIENT_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    base_url: str = "http://localhost:8090"
    api_token: str = "dev-arture-token"
    user_id: str = "local-user"

    timeout_ms: int = 120_000
    idle_timeout_ms: int | None = None
    fallback_to_rest: bool = True
    request_timeout_seconds: float = 30.0
    log_level: str = "WARNING"


settings = ClientSettings()
