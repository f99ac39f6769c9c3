from __future__ import annotations

import uuid
from collections.abc import AsyncIterator

from arture_service.app.store import (
    HistoryTruncatedError,
    InMemorySessionStore,
    Session,
    SessionNotFoundError,
    SessionState,
)
from arture_service.app.transport import stream_session_events
from arture_service.modules.generation.worker import GenerationWorkerPool
from libs.common.logging import get_logger
from libs.contracts.models import (
    SessionEventsResponse,
    SessionSnapshot,
    StartSessionRequest,
    StartSessionResponse,
    StreamRequest,
)

logger = get_logger("arture_service.modules.streaming")


class StreamingService:
    """세션 생성, 스트림 시작, 재연결, 복구 조회 유스케이스를 담당해요."""

    def __init__(
        self,
        *,
        store: InMemorySessionStore,
        worker_pool: GenerationWorkerPool,
        heartbeat_interval_seconds: float,
        max_stream_seconds: float,
    ) -> None:
        self._store = store
        self._worker_pool = worker_pool
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._max_stream_seconds = max_stream_seconds

    def _owned(self, owner_id: str, session_id: str) -> Session:
        session = self._store.get(session_id)
        # 다른 사용자의 세션은 존재 자체를 드러내지 않아요.
        if session is None or session.metadata.owner_id != owner_id:
            raise SessionNotFoundError(session_id)
        return session

    async def start_session(self, owner_id: str, request: StartSessionRequest) -> StartSessionResponse:
        session = await self._store.create(
            owner_id,
            conversation_id=request.conversation_id,
            project_id=request.project_id,
        )
        return StartSessionResponse(
            session_id=session.id,
            state=session.state.to_token(),
            created_at=session.metadata.started_at,
        )

    async def begin_stream(self, owner_id: str, request: StreamRequest, trace_id: str | None = None) -> str:
        self._owned(owner_id, request.session_id)
        task_id = f"gen_{uuid.uuid4().hex}"
        await self._store.claim_writer(request.session_id, task_id)
        try:
            await self._store.set_state(request.session_id, SessionState.CONNECTING)
            await self._worker_pool.enqueue(
                task_id=task_id,
                session_id=request.session_id,
                owner_id=owner_id,
                request=request,
                trace_id=trace_id,
            )
        except Exception:
            await self._store.release_writer(request.session_id, task_id)
            raise
        logger.info(
            "stream_requested",
            session_id=request.session_id,
            task_id=task_id,
            message_preview=request.message[:80],
            history_length=len(request.conversation_history),
            has_context=request.context is not None,
        )
        return task_id

    def resolve_cursor(self, owner_id: str, session_id: str, last_event_id: str | None, since: int | None) -> int:
        """`since`가 있으면 그대로 쓰고, 없으면 Last-Event-ID를 sequence로 바꿔요."""
        session = self._owned(owner_id, session_id)
        if since is not None:
            return since
        if not last_event_id:
            return -1
        for event in session.events:
            if event.id == last_event_id:
                return event.sequence
        raise HistoryTruncatedError(session_id, -1)

    def open_events(self, owner_id: str, session_id: str, since: int = -1) -> AsyncIterator[str]:
        self._owned(owner_id, session_id)
        if self._store.has_gap(session_id, since):
            raise HistoryTruncatedError(session_id, since)
        return stream_session_events(
            self._store,
            session_id,
            since=since,
            heartbeat_interval_seconds=self._heartbeat_interval_seconds,
            max_duration_seconds=self._max_stream_seconds,
        )

    def snapshot(self, owner_id: str, session_id: str) -> SessionSnapshot:
        session = self._owned(owner_id, session_id)
        return SessionSnapshot(
            session_id=session.id,
            state=session.state.to_token(),
            events=[event.to_contract() for event in session.events],
            actions=[action.to_contract() for action in session.actions],
            current_message=session.current_message,
            error=session.error,
            model=session.metadata.model,
            conversation_id=session.metadata.conversation_id,
            project_id=session.metadata.project_id,
            started_at=session.metadata.started_at,
            last_activity_at=session.metadata.last_activity_at,
        )

    def events_since(self, owner_id: str, session_id: str, since: int = -1) -> SessionEventsResponse:
        session = self._owned(owner_id, session_id)
        return SessionEventsResponse(
            session_id=session.id,
            state=session.state.to_token(),
            events=[event.to_contract() for event in session.events if event.sequence > since],
            actions=[action.to_contract() for action in session.actions],
            current_message=session.current_message,
            truncated=since + 1 < session.oldest_retained_sequence,
        )
