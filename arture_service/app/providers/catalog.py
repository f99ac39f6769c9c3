from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from arture_service.app.providers.base import ProviderAdapter
from arture_service.app.providers.openai_adapter import OpenAiProviderAdapter
from arture_service.app.providers.placeholder_adapter import PlaceholderProviderAdapter
from libs.common.errors import ConfigurationError

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class ProviderRuntimeSettings(Protocol):
    service_name: str
    enabled_provider_names: list[str]
    openai_api_key: str
    openai_base_url: str
    openai_models: list[str]
    openrouter_api_key: str
    openrouter_models: list[str]
    provider_timeout_seconds: float


# 프로바이더 팩토리 테이블이에요. 모델마다 어댑터를 하나씩 만들어서 체인 순서대로 시도해요.
_ProviderFactory = Callable[["ProviderRuntimeSettings"], list[ProviderAdapter]]

_PROVIDER_FACTORIES: dict[str, _ProviderFactory] = {
    "openai": lambda s: [
        OpenAiProviderAdapter(
            name="openai",
            api_key=s.openai_api_key,
            model=model,
            timeout_seconds=s.provider_timeout_seconds,
            base_url=s.openai_base_url,
            provider_hint="OpenAI",
        )
        for model in s.openai_models
    ],
    "openrouter": lambda s: [
        OpenAiProviderAdapter(
            name="openrouter",
            api_key=s.openrouter_api_key,
            model=model,
            timeout_seconds=s.provider_timeout_seconds,
            base_url=OPENROUTER_BASE_URL,
            default_headers={"X-Title": s.service_name},
            provider_hint="OpenRouter",
        )
        for model in s.openrouter_models
    ],
    "placeholder": lambda s: [PlaceholderProviderAdapter()],
}

KNOWN_PROVIDER_NAMES: frozenset[str] = frozenset(_PROVIDER_FACTORIES.keys())


def get_enabled_provider_names(names: list[str]) -> list[str]:
    resolved = names if names else ["placeholder"]

    unknown = [p for p in resolved if p not in KNOWN_PROVIDER_NAMES]
    if unknown:
        unknown_text = ", ".join(sorted(unknown))
        known_text = ", ".join(sorted(KNOWN_PROVIDER_NAMES))
        raise ConfigurationError(f"알 수 없는 프로바이더가 설정됐어요: {unknown_text}. 지원 목록: {known_text}")

    return resolved


def build_provider_adapters(settings: ProviderRuntimeSettings) -> list[ProviderAdapter]:
    adapters: list[ProviderAdapter] = []
    for provider_name in get_enabled_provider_names(settings.enabled_provider_names):
        adapters.extend(_PROVIDER_FACTORIES[provider_name](settings))
    return adapters
