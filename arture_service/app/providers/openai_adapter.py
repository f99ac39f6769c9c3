from __future__ import annotations

from collections.abc import AsyncIterator

import openai
from openai import AsyncOpenAI

from arture_service.app.providers.base import ProviderAdapter, ProviderRequest
from libs.common.errors import ConfigurationError, RateLimitError, UpstreamTransientError


class OpenAiProviderAdapter(ProviderAdapter):
    """OpenAI 호환 chat completions 스트림을 읽어요. OpenRouter도 base_url만 바꿔서 써요."""

    def __init__(
        self,
        *,
        name: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        base_url: str | None = None,
        default_headers: dict[str, str] | None = None,
        provider_hint: str = "OpenAI",
    ) -> None:
        self.name = name
        self.model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._base_url = base_url or None
        self._default_headers = default_headers or {}
        self._provider_hint = provider_hint

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[str]:
        if not self._api_key:
            raise ConfigurationError(f"{self._provider_hint} API 키가 설정되지 않았어요.")

        client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            default_headers=self._default_headers,
        )
        try:
            try:
                response = await client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": request.system_prompt},
                        {"role": "user", "content": request.message},
                    ],
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                    stream=True,
                )
                async for chunk in response:
                    if not chunk.choices:
                        continue
                    text = chunk.choices[0].delta.content
                    if text:
                        yield text
            except openai.RateLimitError as exc:
                raise RateLimitError(f"{self._provider_hint} 요청 제한에 걸렸어요.") from exc
            except openai.APIError as exc:
                raise UpstreamTransientError(f"{self._provider_hint} 응답 생성에 실패했어요.") from exc
        finally:
            await client.close()
