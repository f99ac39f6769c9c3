from __future__ import annotations

import asyncio

from structlog.contextvars import bound_contextvars

from arture_service.app.parser import ParsedAction, create_parser_state, finalize_parser, process_chunk
from arture_service.app.prompts import build_system_prompt
from arture_service.app.providers.base import ProviderRequest
from arture_service.app.providers.chain import ProviderChain
from arture_service.app.store import InMemorySessionStore, SessionState
from arture_service.modules.generation.contracts import GenerationTask
from libs.common.errors import DomainError, StreamTimeoutError
from libs.common.logging import get_logger
from libs.contracts.models import (
    ActionData,
    ChunkData,
    CompleteData,
    ErrorData,
    EventType,
    MessageData,
    SessionStartData,
    WireModel,
)

logger = get_logger("arture_service.generation_engine")


def _action_data(action: ParsedAction) -> ActionData:
    return ActionData(
        id=action.id,
        type=action.type,
        payload=action.payload,
        description=action.description,
    )


class GenerationEngine:
    """모델 출력을 파서에 흘려 넣고 해석 결과를 세션 이벤트로 기록해요."""

    def __init__(
        self,
        *,
        store: InMemorySessionStore,
        providers: ProviderChain,
        timeout_seconds: float,
        history_window: int = 6,
        element_limit: int = 8,
    ) -> None:
        self._store = store
        self._providers = providers
        self._timeout_seconds = timeout_seconds
        self._history_window = history_window
        self._element_limit = element_limit

    async def process(self, task: GenerationTask) -> None:
        with bound_contextvars(session_id=task.session_id, trace_id=task.trace_id):
            try:
                await asyncio.wait_for(self._run(task), timeout=self._timeout_seconds)
            except TimeoutError as exc:
                raise StreamTimeoutError("응답 생성 시간이 초과됐어요.") from exc

    async def fail(self, task: GenerationTask, error: DomainError | None = None) -> None:
        """오류 이벤트를 남기고 세션을 종료 상태로 바꿔요."""
        if error is None:
            message, code = "요청 처리 중 예상치 못한 오류가 발생했어요.", "INTERNAL_ERROR"
        else:
            message, code = error.message, error.error_code
        state = SessionState.TIMEOUT if isinstance(error, StreamTimeoutError) else SessionState.ERROR
        await self._emit(task, EventType.ERROR, ErrorData(message=message, code=code))
        await self._store.set_state(task.session_id, state, error=message)

    async def release(self, task: GenerationTask) -> None:
        await self._store.release_writer(task.session_id, task.task_id)

    async def _run(self, task: GenerationTask) -> None:
        request = task.request
        await self._emit(
            task,
            EventType.SESSION_START,
            SessionStartData(session_id=task.session_id, timestamp=self._store.now_ms()),
        )
        await self._store.set_state(task.session_id, SessionState.STREAMING)

        provider_request = ProviderRequest(
            session_id=task.session_id,
            system_prompt=build_system_prompt(
                request.context,
                request.conversation_history,
                request.image_attachments,
                history_window=self._history_window,
                element_limit=self._element_limit,
            ),
            message=request.message,
        )

        parser = create_parser_state()
        model_label = ""
        async for piece in self._providers.stream(provider_request):
            if piece.label != model_label:
                model_label = piece.label
                await self._store.set_model(task.session_id, model_label)
                logger.info("generation_provider_selected", provider=model_label)
            await self._emit(task, EventType.CHUNK, ChunkData(text=piece.text))
            result = process_chunk(parser, piece.text)
            if result.new_message:
                await self._emit(task, EventType.MESSAGE, MessageData(content=result.new_message, is_partial=True))
            for action in result.new_actions:
                await self._emit(task, EventType.ACTION, _action_data(action))

        final = finalize_parser(parser)
        await self._emit(task, EventType.MESSAGE, MessageData(content=final.message, is_partial=False))
        for action in final.new_actions:
            await self._emit(task, EventType.ACTION, _action_data(action))
        await self._emit(
            task,
            EventType.COMPLETE,
            CompleteData(success=True, model=model_label, actions_count=len(final.actions)),
        )
        await self._store.set_state(task.session_id, SessionState.COMPLETED)
        logger.info(
            "generation_completed",
            provider=model_label,
            actions_count=len(final.actions),
            message_length=len(final.message),
        )

    async def _emit(self, task: GenerationTask, event_type: EventType, data: WireModel) -> None:
        await self._store.append_event(task.session_id, event_type, data)
