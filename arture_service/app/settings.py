from __future__ import annotations

from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value: object) -> object:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ARTURE_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    service_name: str = "arture-stream"
    host: str = "0.0.0.0"
    port: int = 8090
    api_token: str = "dev-arture-token"
    log_level: str = "INFO"

    session_timeout_ms: int = 120_000
    heartbeat_interval_ms: int = 15_000
    # 자동 재시도는 하지 않아요. 클라이언트에 설정값으로만 알려줘요.
    max_retries: int = 3
    buffer_size: int = 100
    session_max_age_ms: int = 30 * 60 * 1000
    eviction_interval_seconds: float = 60.0
    generation_worker_count: int = 2
    generation_queue_size: int = 1000

    # CSV 문자열 또는 리스트 모두 허용해요
    enabled_provider_names: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["placeholder"])
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_models: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["gpt-4o-mini"])
    openrouter_api_key: str = ""
    openrouter_models: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["google/gemini-2.0-flash-exp:free", "google/gemini-exp-1206:free"]
    )
    provider_timeout_seconds: float = 60.0
    provider_cooldown_seconds: float = 60.0

    history_window: int = 6
    context_element_limit: int = 8

    @field_validator("enabled_provider_names", "openai_models", "openrouter_models", mode="before")
    @classmethod
    def _parse_csv(cls, value: object) -> object:
        """환경변수에서 CSV 문자열로 들어온 경우 리스트로 변환해요."""
        return _split_csv(value)

    @field_validator(
        "buffer_size",
        "session_timeout_ms",
        "heartbeat_interval_ms",
        "generation_worker_count",
        "generation_queue_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("0보다 큰 값이어야 해요.")
        return value

    @model_validator(mode="after")
    def _warn_insecure_tokens(self) -> "Settings":
        """개발용 기본 토큰이 프로덕션에서 그대로 쓰이지 않도록 경고를 남겨요."""
        import logging

        _log = logging.getLogger("arture_service.settings")
        if self.api_token in {"dev-arture-token", ""}:
            _log.warning("ARTURE_API_TOKEN이 기본값이에요. 프로덕션 환경에서는 반드시 교체해야 해요.")
        return self


settings = Settings()
