from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass(slots=True)
class ProviderRequest:
    session_id: str
    system_prompt: str
    message: str
    temperature: float = 0.7
    max_tokens: int = 4096


class ProviderAdapter:
    name: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.name}:{self.model}"

    @property
    def configured(self) -> bool:
        return True

    def stream(self, request: ProviderRequest) -> AsyncIterator[str]:  # pragma: no cover - interface
        raise NotImplementedError

    async def generate(self, request: ProviderRequest) -> str:
        parts = [piece async for piece in self.stream(request)]
        return "".join(parts)
