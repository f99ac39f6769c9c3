from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from arture_service.app.providers.base import ProviderAdapter, ProviderRequest
from libs.common.errors import DomainError, RateLimitError
from libs.common.logging import get_logger

logger = get_logger("arture_service.providers")


class ProvidersExhaustedError(DomainError):
    http_status = 503

    def __init__(self, attempted: list[str]) -> None:
        super().__init__(
            "PROVIDERS_FAILED",
            "사용 가능한 모든 AI 프로바이더가 응답하지 못했어요.",
            retryable=True,
        )
        self.attempted = attempted


@dataclass(slots=True)
class ProviderPiece:
    label: str
    text: str


class ProviderChain:
    """어댑터를 순서대로 시도해요.

    텍스트를 하나도 내지 못하고 실패한 어댑터는 건너뛰고 다음으로 넘어가요.
    이미 텍스트를 낸 뒤의 실패는 중복 출력을 막기 위해 그대로 올려보내요.
    요청 제한에 걸린 어댑터는 쿨다운 동안 후보에서 빠져요.
    """

    def __init__(
        self,
        adapters: list[ProviderAdapter],
        *,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapters = adapters
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._cooldown_until: dict[str, float] = {}

    @property
    def adapters(self) -> list[ProviderAdapter]:
        return list(self._adapters)

    @property
    def is_configured(self) -> bool:
        return any(adapter.configured for adapter in self._adapters)

    def available(self) -> list[ProviderAdapter]:
        now = self._clock()
        candidates: list[ProviderAdapter] = []
        for adapter in self._adapters:
            if not adapter.configured:
                continue
            until = self._cooldown_until.get(adapter.label)
            if until is not None:
                if now < until:
                    continue
                del self._cooldown_until[adapter.label]
            candidates.append(adapter)
        return candidates

    def _record_failure(self, adapter: ProviderAdapter, exc: DomainError) -> None:
        if isinstance(exc, RateLimitError):
            self._cooldown_until[adapter.label] = self._clock() + self._cooldown_seconds
        logger.warning(
            "provider_failed",
            provider=adapter.label,
            error_code=exc.error_code,
            error=exc.message,
        )

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderPiece]:
        attempted: list[str] = []
        for adapter in self.available():
            attempted.append(adapter.label)
            produced = False
            try:
                async for text in adapter.stream(request):
                    if not text:
                        continue
                    produced = True
                    yield ProviderPiece(label=adapter.label, text=text)
            except DomainError as exc:
                self._record_failure(adapter, exc)
                if produced:
                    raise
                continue
            if produced:
                return
            logger.warning("provider_empty_response", provider=adapter.label)
        raise ProvidersExhaustedError(attempted)

    async def generate(self, request: ProviderRequest) -> ProviderPiece:
        attempted: list[str] = []
        for adapter in self.available():
            attempted.append(adapter.label)
            try:
                text = await adapter.generate(request)
            except DomainError as exc:
                self._record_failure(adapter, exc)
                continue
            if text.strip():
                return ProviderPiece(label=adapter.label, text=text)
            logger.warning("provider_empty_response", provider=adapter.label)
        raise ProvidersExhaustedError(attempted)
