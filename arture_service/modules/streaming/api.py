from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import StreamingResponse

from arture_service.app.transport import SSE_HEADERS
from arture_service.modules.common.deps import (
    get_provider_chain,
    get_settings,
    get_store,
    get_streaming_service,
    require_auth,
    resolve_principal,
)
from libs.common.logging import get_logger
from libs.contracts.models import (
    SessionEventsResponse,
    SessionSnapshot,
    StartSessionRequest,
    StartSessionResponse,
    StreamRequest,
)

router = APIRouter(prefix="/streaming", tags=["streaming"])
logger = get_logger("arture_service.modules.streaming")


@router.get("/health")
async def streaming_health(request: Request) -> dict[str, Any]:
    app_settings = get_settings(request)
    chain = get_provider_chain(request)
    return {
        "status": "healthy",
        "providers": [
            {"name": adapter.label, "configured": adapter.configured}
            for adapter in chain.adapters
        ],
        "configured": chain.is_configured,
        "config": {
            "timeoutMs": app_settings.session_timeout_ms,
            "heartbeatIntervalMs": app_settings.heartbeat_interval_ms,
            "maxRetries": app_settings.max_retries,
            "bufferSize": app_settings.buffer_size,
        },
        "timestamp": get_store(request).now_ms(),
    }


@router.post("/start-session", response_model=StartSessionResponse)
async def start_session(
    request: Request,
    req: StartSessionRequest,
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> StartSessionResponse:
    require_auth(request, authorization)
    owner_id = resolve_principal(x_user_id)
    return await get_streaming_service(request).start_session(owner_id, req)


@router.post("/stream")
async def stream_response(
    request: Request,
    req: StreamRequest,
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> StreamingResponse:
    require_auth(request, authorization)
    owner_id = resolve_principal(x_user_id)
    service = get_streaming_service(request)
    trace_id = str(uuid.uuid4())
    await service.begin_stream(owner_id, req, trace_id=trace_id)
    return StreamingResponse(
        service.open_events(owner_id, req.session_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/sessions/{session_id}/stream")
async def resume_stream(
    request: Request,
    session_id: str,
    since: int | None = Query(default=None),
    last_event_id: str | None = Header(default=None, alias="last-event-id"),
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> StreamingResponse:
    require_auth(request, authorization)
    owner_id = resolve_principal(x_user_id)
    service = get_streaming_service(request)
    cursor = service.resolve_cursor(owner_id, session_id, last_event_id, since)
    logger.info("stream_resumed", session_id=session_id, cursor=cursor)
    return StreamingResponse(
        service.open_events(owner_id, session_id, since=cursor),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(
    request: Request,
    session_id: str,
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> SessionSnapshot:
    require_auth(request, authorization)
    return get_streaming_service(request).snapshot(resolve_principal(x_user_id), session_id)


@router.get("/sessions/{session_id}/events", response_model=SessionEventsResponse)
async def get_session_events(
    request: Request,
    session_id: str,
    since: int = Query(default=-1),
    authorization: str = Header(default=""),
    x_user_id: str = Header(default=""),
) -> SessionEventsResponse:
    require_auth(request, authorization)
    return get_streaming_service(request).events_since(resolve_principal(x_user_id), session_id, since)
