from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from arture_service.app.providers.base import ProviderAdapter, ProviderRequest


class PlaceholderProviderAdapter(ProviderAdapter):
    """실제 모델 없이 정해진 JSON 응답을 잘게 나눠 흘려보내요."""

    def __init__(self, name: str = "placeholder", chunk_size: int = 12, delay_seconds: float = 0.0) -> None:
        self.name = name
        self.model = "canned"
        self._chunk_size = max(1, chunk_size)
        self._delay_seconds = delay_seconds

    def render(self, request: ProviderRequest) -> str:
        document = {
            "message": (
                f"`{self.name}` 프로바이더는 현재 플레이스홀더 단계예요. "
                f"요청은 `{request.message or '요청 없음'}`이에요."
            ),
            "actions": [
                {
                    "type": "add_text",
                    "payload": {"text": request.message[:40], "position": "center"},
                    "description": "요청 내용을 캔버스 가운데에 적어요.",
                }
            ],
        }
        return json.dumps(document, ensure_ascii=False)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[str]:
        text = self.render(request)
        for start in range(0, len(text), self._chunk_size):
            await asyncio.sleep(self._delay_seconds)
            yield text[start : start + self._chunk_size]
