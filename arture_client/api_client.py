from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx
from httpx_sse import EventSource, ServerSentEvent, aconnect_sse

from arture_client.errors import HistoryGapError, SessionCreationError, StreamTransportError
from libs.common.errors import (
    AuthenticationError,
    ConflictError,
    DomainError,
    ErrorEnvelope,
    NotFoundError,
    UpstreamTransientError,
)
from libs.contracts.models import (
    AiResponse,
    AiResponseRequest,
    SessionEventsResponse,
    SessionSnapshot,
    StartSessionRequest,
    StartSessionResponse,
    StreamRequest,
)

DONE_SENTINEL = "[DONE]"


def is_done_event(sse: ServerSentEvent) -> bool:
    return sse.data == DONE_SENTINEL


class ArtureApiClient:
    """스트리밍 서버의 HTTP API를 감싸요.

    전송 계층은 `transport`로 주입할 수 있어서 테스트에서는 `httpx.MockTransport`나
    `httpx.ASGITransport`를 그대로 넘기면 돼요.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}", "x-user-id": user_id},
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_session(
        self,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> StartSessionResponse:
        payload = StartSessionRequest(conversation_id=conversation_id, project_id=project_id).to_wire()
        try:
            data = await self._request_json("POST", "/v1/streaming/start-session", payload)
            return StartSessionResponse.model_validate(data)
        except (DomainError, ValueError) as exc:
            raise SessionCreationError() from exc

    async def get_session(self, session_id: str) -> SessionSnapshot:
        data = await self._request_json("GET", f"/v1/streaming/sessions/{session_id}")
        return SessionSnapshot.model_validate(data)

    async def get_session_events(self, session_id: str, since: int = -1) -> SessionEventsResponse:
        data = await self._request_json(
            "GET",
            f"/v1/streaming/sessions/{session_id}/events",
            params={"since": since},
        )
        return SessionEventsResponse.model_validate(data)

    async def ai_response(self, request: AiResponseRequest) -> AiResponse:
        data = await self._request_json("POST", "/v1/chat/ai-response", request.to_wire())
        return AiResponse.model_validate(data)

    @asynccontextmanager
    async def open_stream(self, request: StreamRequest) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        async with self._stream("POST", "/v1/streaming/stream", json=request.to_wire()) as records:
            yield records

    @asynccontextmanager
    async def resume_stream(self, session_id: str, since: int = -1) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        path = f"/v1/streaming/sessions/{session_id}/stream"
        async with self._stream("GET", path, params={"since": since}, session_id=session_id) as records:
            yield records

    @asynccontextmanager
    async def _stream(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        session_id: str | None = None,
    ) -> AsyncIterator[AsyncIterator[ServerSentEvent]]:
        # 스트림 수명은 소비자 쪽 제한 시간이 관리해요. 읽기 제한은 두지 않아요.
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with aconnect_sse(
                self._client,
                method,
                path,
                json=json,
                params=params,
                timeout=timeout,
            ) as event_source:
                response = event_source.response
                if response.status_code >= 400:
                    await response.aread()
                    raise self._error_for(response, session_id=session_id)
                events = self._events(event_source)
                try:
                    yield events
                finally:
                    await events.aclose()
        except httpx.TimeoutException as exc:
            raise StreamTransportError("스트리밍 연결이 시간 초과됐어요.") from exc
        except httpx.HTTPError as exc:
            raise StreamTransportError() from exc

    @staticmethod
    async def _events(event_source: EventSource) -> AsyncIterator[ServerSentEvent]:
        try:
            async for sse in event_source.aiter_sse():
                yield sse
        except httpx.HTTPError as exc:
            # SSEError도 httpx.TransportError 계열이라 여기서 함께 잡혀요.
            raise StreamTransportError("스트리밍 연결이 끊겼어요.") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        request_kwargs: dict[str, Any] = {"method": method, "url": path}
        if params:
            request_kwargs["params"] = params
        if method.upper() != "GET":
            request_kwargs["json"] = payload or {}
        try:
            response = await self._client.request(**request_kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamTransientError("스트리밍 서버 요청이 시간 초과됐어요.") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransientError("스트리밍 서버 연결에 실패했어요.") from exc

        if response.status_code >= 400:
            raise self._error_for(response)

        data = response.json()
        if not isinstance(data, dict):
            raise UpstreamTransientError("스트리밍 서버 응답 형식이 올바르지 않아요.")
        return data

    @staticmethod
    def _error_for(response: httpx.Response, *, session_id: str | None = None) -> DomainError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        envelope = ErrorEnvelope.from_payload(body)
        if envelope is not None:
            error_code, message = envelope.error_code, envelope.message
        else:
            # FastAPI HTTPException 본문은 detail 하나만 담아요
            error_code = ""
            message = str(body.get("detail") or "") if isinstance(body, dict) else ""

        if response.status_code == 401:
            return AuthenticationError(message or "스트리밍 서버 인증에 실패했어요.")
        if response.status_code == 404:
            return NotFoundError(message or "세션을 찾지 못했어요.")
        if response.status_code == 409:
            if error_code == "HISTORY_TRUNCATED" and session_id is not None:
                return HistoryGapError(session_id)
            return ConflictError(message or "현재 상태에서는 처리할 수 없는 요청이에요.", error_code=error_code or "CONFLICT")
        if response.status_code >= 500:
            return UpstreamTransientError("스트리밍 서버 오류가 발생했어요.")
        return UpstreamTransientError(message or f"스트리밍 서버 요청이 거절됐어요: {response.status_code}")
