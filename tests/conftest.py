from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterator
from typing import Any

import httpx
import pytest
from arture_client.api_client import ArtureApiClient
from arture_service.app.main import create_app
from arture_service.app.providers.base import ProviderAdapter, ProviderRequest
from arture_service.app.settings import Settings
from arture_service.app.store import InMemorySessionStore, Session, StoreConfig
from arture_service.app.transport import format_sse_gap
from fastapi.testclient import TestClient

from libs.common.errors import DomainError

TEST_TOKEN = "test-token"
AUTH_HEADERS = {"Authorization": f"Bearer {TEST_TOKEN}", "x-user-id": "u1"}


class FakeClock:
    """테스트에서 시간을 직접 움직이는 시계예요. 단위는 초예요."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider(ProviderAdapter):
    """정해진 조각을 흘려보내고, 필요하면 중간에 실패하는 프로바이더예요."""

    def __init__(
        self,
        chunks: list[str],
        *,
        name: str = "scripted",
        model: str = "test-model",
        fail_after: int | None = None,
        error: DomainError | None = None,
        configured: bool = True,
    ) -> None:
        self.name = name
        self.model = model
        self._chunks = chunks
        self._fail_after = fail_after
        self._error = error
        self._configured = configured
        self.requests: list[ProviderRequest] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def stream(self, request: ProviderRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index >= self._fail_after:
                break
            yield chunk
        if self._error is not None:
            raise self._error


@pytest.fixture
def session_store() -> InMemorySessionStore:
    """각 테스트용으로 새로 생성한 빈 InMemorySessionStore예요."""
    return InMemorySessionStore(StoreConfig(buffer_size=100))


async def create_test_session(store: InMemorySessionStore, owner_id: str = "u1") -> Session:
    """테스트용 세션을 기본값으로 생성하는 헬퍼예요."""
    return await store.create(owner_id, conversation_id="conv-1", project_id="proj-1")


def build_test_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "api_token": TEST_TOKEN,
        "enabled_provider_names": ["placeholder"],
        "heartbeat_interval_ms": 200,
        "session_timeout_ms": 5_000,
        "eviction_interval_seconds": 3600.0,
        "generation_worker_count": 1,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@pytest.fixture
def app_settings() -> Settings:
    return build_test_settings()


@pytest.fixture
def client(app_settings: Settings) -> Iterator[TestClient]:
    with TestClient(create_app(app_settings)) as test_client:
        yield test_client


def sse_event(event_type: str, sequence: int, data: dict[str, Any], session_id: str = "sess_1") -> str:
    """서버가 보내는 것과 같은 모양의 SSE 레코드 문자열을 만들어요."""
    body = {
        "type": event_type,
        "id": f"evt_{sequence}",
        "sessionId": session_id,
        "sequence": sequence,
        "timestamp": 1_700_000_000_000 + sequence,
        "data": data,
    }
    return f"id: evt_{sequence}\nevent: {event_type}\ndata: {json.dumps(body, ensure_ascii=False)}\n\n"


SSE_DONE = "event: done\ndata: [DONE]\n\n"


def sse_gap(cursor: int, oldest: int, session_id: str = "sess_1") -> str:
    """라이브 스트림이 버퍼보다 뒤처졌을 때 서버가 보내는 레코드예요."""
    return format_sse_gap(session_id, cursor, oldest, 1_700_000_000_000)


def snapshot_body(
    session_id: str = "sess_1",
    state: str = "COMPLETED",
    events: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "sessionId": session_id,
        "state": state,
        "events": events or [],
        "actions": [],
        "currentMessage": "",
        "startedAt": 1,
        "lastActivityAt": 2,
    }
    body.update(extra)
    return body


class FakeArtureServer:
    """httpx.MockTransport에 물려 쓰는 가짜 스트리밍 서버예요.

    각 엔드포인트의 응답을 속성으로 미리 정해 두고, 받은 요청은 `requests`에 쌓아요.
    `hang`을 켜면 준비된 레코드를 보낸 뒤 연결을 닫지 않고 멈춰 있어요.
    """

    def __init__(self) -> None:
        self.session_id = "sess_1"
        self.start_status = 200
        self.stream_status = 200
        self.stream_body: dict[str, Any] = {}
        self.stream_records: list[str] = []
        self.resume_status = 200
        self.resume_body: dict[str, Any] = {}
        self.resume_records: list[str] = []
        self.hang = False
        self.snapshot_status = 200
        self.snapshot: dict[str, Any] = snapshot_body()
        self.ai_response_status = 200
        self.ai_response: dict[str, Any] = {"response": "REST 응답이에요", "isConfigured": True}
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def calls_to(self, suffix: str) -> int:
        return sum(1 for path in self.paths() if path.endswith(suffix))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> ArtureApiClient:
        return ArtureApiClient("http://arture.test", TEST_TOKEN, "u1", 5.0, transport=self.transport())

    async def _body(self, records: list[str]) -> AsyncIterator[bytes]:
        for record in records:
            yield record.encode("utf-8")
            await asyncio.sleep(0)
        if self.hang:
            await asyncio.sleep(3600)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        sse_headers = {"content-type": "text/event-stream"}
        if path == "/v1/streaming/start-session":
            if self.start_status >= 400:
                return httpx.Response(self.start_status, json={"error_code": "INTERNAL_ERROR", "message": "boom"})
            return httpx.Response(200, json={"sessionId": self.session_id, "state": "CREATED", "createdAt": 1})
        if path == "/v1/streaming/stream":
            if self.stream_status >= 400:
                return httpx.Response(self.stream_status, json=self.stream_body)
            return httpx.Response(200, headers=sse_headers, content=self._body(self.stream_records))
        if path.endswith("/stream"):
            if self.resume_status >= 400:
                return httpx.Response(self.resume_status, json=self.resume_body)
            return httpx.Response(200, headers=sse_headers, content=self._body(self.resume_records))
        if path == "/v1/chat/ai-response":
            return httpx.Response(self.ai_response_status, json=self.ai_response)
        if path.startswith("/v1/streaming/sessions/"):
            return httpx.Response(self.snapshot_status, json=self.snapshot)
        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def fake_server() -> FakeArtureServer:
    return FakeArtureServer()
