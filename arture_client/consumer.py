from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from httpx_sse import ServerSentEvent
from pydantic import ValidationError as PydanticValidationError

from arture_client.api_client import ArtureApiClient, is_done_event
from arture_client.errors import HistoryGapError, SessionCreationError
from arture_client.state import ClientSessionState, ConsumerOptions, StreamingState
from libs.common.errors import DomainError
from libs.common.logging import get_logger
from libs.contracts.models import (
    HISTORY_TRUNCATED_CODE,
    ActionData,
    ActionEvent,
    AiResponseRequest,
    CompleteEvent,
    ErrorEvent,
    GenerationInput,
    HeartbeatEvent,
    MessageEvent,
    SessionSnapshot,
    SessionStateToken,
    StreamEvent,
    StreamRequest,
    parse_stream_event_json,
)

logger = get_logger("arture_client.consumer")

SESSION_START_FAILED_MESSAGE = "스트리밍 세션을 시작하지 못했어요."
STREAM_TIMEOUT_MESSAGE = "스트리밍 응답 시간이 초과됐어요."
IDLE_TIMEOUT_MESSAGE = "스트리밍 연결이 응답하지 않아요."
HISTORY_GAP_MESSAGE = "스트리밍 기록이 잘려서 응답을 이어 받지 못했어요."
MAX_GAP_RECOVERIES = 3

Callback = Callable[..., Awaitable[None] | None]


@dataclass(slots=True)
class StreamCallbacks:
    on_action: Callable[[ActionData], Awaitable[None] | None] | None = None
    on_message: Callable[[str, bool], Awaitable[None] | None] | None = None
    on_complete: Callable[[StreamingState], Awaitable[None] | None] | None = None
    on_error: Callable[[str], Awaitable[None] | None] | None = None


class _IdleTimeout(Exception):
    pass


class _Outcome(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"
    GAP = "gap"


@dataclass(slots=True)
class _Terminal:
    outcome: _Outcome
    message: str = ""
    session_state: ClientSessionState = ClientSessionState.ERROR


class StreamingConsumer:
    """스트리밍 응답 하나를 받아서 콜백으로 흘려보내는 클라이언트 쪽 소비자예요.

    한 번에 하나의 시도만 살아 있어요. 새 시도를 시작하면 이전 시도의 전송과 타이머를 먼저 정리해요.
    시도마다 번호를 붙여 두고, 번호가 바뀐 뒤에 도착한 결과는 상태와 콜백에 반영하지 않아요.
    """

    def __init__(
        self,
        api: ArtureApiClient,
        callbacks: StreamCallbacks | None = None,
        options: ConsumerOptions | None = None,
        *,
        idle_timeout_ms: int | None = None,
    ) -> None:
        self._api = api
        self._callbacks = callbacks or StreamCallbacks()
        self._options = options or ConsumerOptions()
        self._idle_timeout_ms = idle_timeout_ms
        self._state = StreamingState()
        self._attempt = 0
        self._live_attempt: int | None = None
        self._task: asyncio.Task[StreamingState] | None = None

    @property
    def state(self) -> StreamingState:
        return self._state.copy()

    @property
    def is_live(self) -> bool:
        return self._live_attempt is not None

    def stream_response(
        self,
        request: GenerationInput,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> asyncio.Task[StreamingState]:
        """새 시도를 시작하고 바로 돌려줘요. 돌려받은 태스크를 기다리면 최종 상태를 받아요."""
        attempt, state = self._begin_attempt()
        task = asyncio.create_task(self._run_stream(attempt, state, request, conversation_id, project_id))
        self._task = task
        return task

    def resume_stream(self, session_id: str) -> asyncio.Task[StreamingState]:
        """재연결 후 같은 세션을 이어 받아요. 같은 세션이면 마지막으로 받은 sequence 다음부터 받아요."""
        previous = self._state
        since = previous.last_sequence if previous.session_id == session_id else -1
        attempt, state = self._begin_attempt()
        if previous.session_id == session_id:
            state.message = previous.message
            state.actions = [action.model_copy(deep=True) for action in previous.actions]
            state.events = list(previous.events)
            state.model = previous.model
            state.last_sequence = previous.last_sequence
        state.session_id = session_id
        task = asyncio.create_task(self._run_resume(attempt, state, session_id, since))
        self._task = task
        return task

    async def wait(self) -> StreamingState:
        task = self._task
        if task is None:
            return self.state
        await asyncio.wait({task})
        if task.cancelled():
            return self.state
        return task.result()

    def cancel(self) -> None:
        """진행 중인 시도를 멈춰요. 이미 끝났거나 이미 취소했다면 아무것도 하지 않아요."""
        attempt = self._live_attempt
        if attempt is None:
            return
        self._live_attempt = None
        self._state.is_streaming = False
        self._state.is_complete = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        logger.info("stream_cancelled", attempt=attempt, session_id=self._state.session_id)

    async def recover_session(self, session_id: str) -> StreamingState | None:
        """서버 스냅샷으로 상태를 다시 만들어요. 세션을 찾지 못하면 None을 돌려줘요."""
        try:
            snapshot = await self._api.get_session(session_id)
        except DomainError as exc:
            logger.warning("session_recovery_failed", session_id=session_id, error_code=exc.error_code)
            return None

        self.cancel()
        state = StreamingState()
        self._apply_snapshot(state, snapshot)
        self._state = state
        return state.copy()

    @staticmethod
    def _apply_snapshot(state: StreamingState, snapshot: SessionSnapshot) -> None:
        state.is_streaming = snapshot.state == SessionStateToken.STREAMING
        state.session_id = snapshot.session_id
        state.message = snapshot.current_message
        state.actions = [action.model_copy(deep=True) for action in snapshot.actions]
        state.events = list(snapshot.events)
        state.error = snapshot.error
        state.is_complete = snapshot.state == SessionStateToken.COMPLETED
        state.model = snapshot.model
        state.session_state = ClientSessionState.from_token(snapshot.state)
        state.last_sequence = max((event.sequence for event in snapshot.events), default=-1)
        logger.info(
            "session_recovered",
            session_id=snapshot.session_id,
            state=snapshot.state.value,
            events=len(snapshot.events),
        )

    def _begin_attempt(self) -> tuple[int, StreamingState]:
        self.cancel()
        self._attempt += 1
        self._live_attempt = self._attempt
        self._state = StreamingState.streaming()
        return self._attempt, self._state

    def _is_current(self, attempt: int) -> bool:
        return self._live_attempt == attempt

    def _settle(self, attempt: int) -> None:
        if self._live_attempt == attempt:
            self._live_attempt = None

    def _deadline(self) -> float:
        return asyncio.get_running_loop().time() + self._options.timeout_ms / 1000

    async def _run_stream(
        self,
        attempt: int,
        state: StreamingState,
        request: GenerationInput,
        conversation_id: str | None,
        project_id: str | None,
    ) -> StreamingState:
        try:
            try:
                session = await self._api.start_session(conversation_id, project_id)
            except SessionCreationError as exc:
                logger.warning("session_start_failed", attempt=attempt, error=exc.message)
                return await self._fail_or_fallback(attempt, state, request, SESSION_START_FAILED_MESSAGE)

            if not self._is_current(attempt):
                return state.copy()
            state.session_id = session.session_id
            state.session_state = ClientSessionState.CONNECTING
            logger.info("stream_session_started", attempt=attempt, session_id=session.session_id)

            stream_request = StreamRequest(
                session_id=session.session_id,
                message=request.message,
                context=request.context,
                conversation_history=request.conversation_history,
                image_attachments=request.image_attachments,
            )
            deadline = self._deadline()
            try:
                terminal = await self._consume_with_deadline(
                    attempt, state, self._api.open_stream(stream_request), deadline
                )
                terminal = await self._recover_gaps(attempt, state, terminal, deadline)
            except TimeoutError:
                logger.warning("stream_timeout", attempt=attempt, session_id=state.session_id)
                return await self._fail_or_fallback(
                    attempt,
                    state,
                    request,
                    STREAM_TIMEOUT_MESSAGE,
                    session_state=ClientSessionState.TIMEOUT,
                )
            except DomainError as exc:
                logger.warning(
                    "stream_transport_failed",
                    attempt=attempt,
                    session_id=state.session_id,
                    error_code=exc.error_code,
                )
                return await self._fail_or_fallback(attempt, state, request, exc.message)
            await self._finish(attempt, state, terminal)
            return state.copy()
        except asyncio.CancelledError:
            if self._is_current(attempt):
                raise
            return state.copy()
        finally:
            self._settle(attempt)

    async def _run_resume(self, attempt: int, state: StreamingState, session_id: str, since: int) -> StreamingState:
        try:
            deadline = self._deadline()
            try:
                terminal = await self._consume_with_deadline(
                    attempt, state, self._api.resume_stream(session_id, since), deadline
                )
                terminal = await self._recover_gaps(attempt, state, terminal, deadline)
            except TimeoutError:
                await self._report_error(attempt, state, STREAM_TIMEOUT_MESSAGE, ClientSessionState.TIMEOUT)
                return state.copy()
            except DomainError as exc:
                await self._report_error(attempt, state, exc.message)
                return state.copy()
            await self._finish(attempt, state, terminal)
            return state.copy()
        except asyncio.CancelledError:
            if self._is_current(attempt):
                raise
            return state.copy()
        finally:
            self._settle(attempt)

    async def _consume_with_deadline(
        self,
        attempt: int,
        state: StreamingState,
        stream: AbstractAsyncContextManager[AsyncIterator[ServerSentEvent]],
        deadline: float,
    ) -> _Terminal | None:
        """제한 시간 안에서 종료 이벤트까지 읽어요. 종료 콜백은 부르지 않고 결과만 돌려줘요.

        제한 시간이 지나면 wait_for가 읽기 루프를 취소해서 전송까지 함께 닫혀요.
        종료 이벤트를 이미 받았다면 연결을 닫는 도중에 시간이 다 돼도 종료 이벤트가 이겨요.
        """
        reached: list[_Terminal] = []
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise TimeoutError(STREAM_TIMEOUT_MESSAGE)
        try:
            await asyncio.wait_for(self._consume(attempt, state, stream, reached), timeout=remaining)
        except _IdleTimeout as exc:
            raise TimeoutError(IDLE_TIMEOUT_MESSAGE) from exc
        except HistoryGapError:
            return _Terminal(_Outcome.GAP)
        except TimeoutError:
            if not reached:
                raise
        return reached[0] if reached else None

    async def _consume(
        self,
        attempt: int,
        state: StreamingState,
        stream: AbstractAsyncContextManager[AsyncIterator[ServerSentEvent]],
        reached: list[_Terminal],
    ) -> None:
        async with stream as events:
            if not self._is_current(attempt):
                return
            state.session_state = ClientSessionState.STREAMING
            async for sse in self._with_idle_timeout(events):
                if not self._is_current(attempt):
                    return
                if is_done_event(sse):
                    break
                event = self._decode(sse)
                if event is None:
                    continue
                terminal = await self._dispatch(attempt, state, event)
                if terminal is not None:
                    reached.append(terminal)
                    return

        # 종료 이벤트 없이 연결이 닫히면 성공으로 간주해요. 프로토콜이 아니라 제품 정책이에요.
        if not self._is_current(attempt):
            return
        logger.info("stream_closed_without_complete", session_id=state.session_id, events=len(state.events))
        state.is_streaming = False
        state.is_complete = True
        state.session_state = ClientSessionState.COMPLETED
        reached.append(_Terminal(_Outcome.COMPLETE))

    async def _recover_gaps(
        self,
        attempt: int,
        state: StreamingState,
        terminal: _Terminal | None,
        deadline: float,
    ) -> _Terminal | None:
        """기록이 잘렸다는 결과를 받으면 스냅샷으로 상태를 다시 맞추고, 세션이 살아 있으면 이어 받아요."""
        recoveries = 0
        while terminal is not None and terminal.outcome is _Outcome.GAP:
            recoveries += 1
            session_id = state.session_id
            if session_id is None or recoveries > MAX_GAP_RECOVERIES:
                return _Terminal(_Outcome.ERROR, HISTORY_GAP_MESSAGE)
            logger.info(
                "stream_history_truncated",
                session_id=session_id,
                last_sequence=state.last_sequence,
                recoveries=recoveries,
            )
            snapshot = await self._api.get_session(session_id)
            if not self._is_current(attempt):
                return None
            await self._adopt_snapshot(attempt, state, snapshot)
            terminal = self._terminal_from_snapshot(snapshot)
            if terminal is None:
                terminal = await self._consume_with_deadline(
                    attempt, state, self._api.resume_stream(session_id, state.last_sequence), deadline
                )
        return terminal

    async def _adopt_snapshot(self, attempt: int, state: StreamingState, snapshot: SessionSnapshot) -> None:
        # 놓친 메시지와 액션은 콜백으로 한 번씩 전달해요.
        known = {action.id for action in state.actions}
        previous_message = state.message
        self._apply_snapshot(state, snapshot)
        if state.message != previous_message:
            await self._emit(attempt, self._callbacks.on_message, state.message, False)
        for action in state.actions:
            if action.id not in known:
                await self._emit(attempt, self._callbacks.on_action, action)

    @staticmethod
    def _terminal_from_snapshot(snapshot: SessionSnapshot) -> _Terminal | None:
        if snapshot.state == SessionStateToken.COMPLETED:
            return _Terminal(_Outcome.COMPLETE)
        if snapshot.state == SessionStateToken.TIMEOUT:
            return _Terminal(_Outcome.ERROR, snapshot.error or STREAM_TIMEOUT_MESSAGE, ClientSessionState.TIMEOUT)
        if snapshot.state == SessionStateToken.ERROR:
            return _Terminal(_Outcome.ERROR, snapshot.error or HISTORY_GAP_MESSAGE)
        return None

    async def _finish(self, attempt: int, state: StreamingState, terminal: _Terminal | None) -> None:
        # 종료 콜백은 제한 시간 밖에서 불러요. 느린 콜백 때문에 대체 경로로 넘어가지 않아요.
        if terminal is None or not self._is_current(attempt):
            return
        if terminal.outcome is _Outcome.COMPLETE:
            await self._emit(attempt, self._callbacks.on_complete, state.copy())
        else:
            await self._report_error(attempt, state, terminal.message, terminal.session_state)

    async def _with_idle_timeout(
        self, events: AsyncIterator[ServerSentEvent]
    ) -> AsyncIterator[ServerSentEvent]:
        if self._idle_timeout_ms is None:
            async for sse in events:
                yield sse
            return
        idle_seconds = self._idle_timeout_ms / 1000
        while True:
            try:
                sse = await asyncio.wait_for(anext(events), timeout=idle_seconds)
            except StopAsyncIteration:
                return
            except TimeoutError as exc:
                raise _IdleTimeout() from exc
            yield sse

    def _decode(self, sse: ServerSentEvent) -> StreamEvent | None:
        try:
            return parse_stream_event_json(sse.data)
        except PydanticValidationError:
            logger.debug("stream_record_skipped", record_event=sse.event, record_id=sse.id)
            return None

    async def _dispatch(self, attempt: int, state: StreamingState, event: StreamEvent) -> _Terminal | None:
        """이벤트 하나를 상태에 반영해요. 스트림이 끝났으면 종료 결과를 돌려줘요."""
        if isinstance(event, HeartbeatEvent):
            return None
        if isinstance(event, ErrorEvent) and event.data.code == HISTORY_TRUNCATED_CODE:
            # 로그에 없는 레코드라 이벤트 목록과 sequence에 넣지 않아요.
            return _Terminal(_Outcome.GAP, event.data.message)
        state.events.append(event)
        if event.sequence > state.last_sequence:
            state.last_sequence = event.sequence

        if isinstance(event, MessageEvent):
            if event.data.is_partial:
                state.message += event.data.content
            else:
                state.message = event.data.content
            await self._emit(attempt, self._callbacks.on_message, event.data.content, event.data.is_partial)
            return None

        if isinstance(event, ActionEvent):
            action = event.data
            for index, existing in enumerate(state.actions):
                if existing.id == action.id:
                    # 같은 id는 상태 갱신이에요. 목록에 새로 넣지 않고 콜백도 다시 부르지 않아요.
                    state.actions[index] = action.model_copy(update={"type": existing.type}, deep=True)
                    return None
            state.actions.append(action.model_copy(deep=True))
            await self._emit(attempt, self._callbacks.on_action, action)
            return None

        if isinstance(event, CompleteEvent):
            state.model = event.data.model or state.model
            state.is_streaming = False
            state.is_complete = True
            state.session_state = ClientSessionState.COMPLETED
            logger.info(
                "stream_completed",
                session_id=state.session_id,
                success=event.data.success,
                actions=len(state.actions),
            )
            return _Terminal(_Outcome.COMPLETE)

        if isinstance(event, ErrorEvent):
            # 서버가 보낸 오류는 항상 종료이고 대체 경로로 넘기지 않아요.
            state.is_streaming = False
            code = event.data.code or ""
            return _Terminal(
                _Outcome.ERROR,
                event.data.message,
                ClientSessionState.TIMEOUT if code == "TIMEOUT" else ClientSessionState.ERROR,
            )

        return None

    async def _fail_or_fallback(
        self,
        attempt: int,
        state: StreamingState,
        request: GenerationInput,
        message: str,
        *,
        session_state: ClientSessionState = ClientSessionState.ERROR,
    ) -> StreamingState:
        if not self._is_current(attempt):
            return state.copy()
        if self._options.fallback_to_rest:
            return await self._fallback(attempt, state, request)
        await self._report_error(attempt, state, message, session_state)
        return state.copy()

    async def _fallback(self, attempt: int, state: StreamingState, request: GenerationInput) -> StreamingState:
        logger.info("rest_fallback_started", attempt=attempt, session_id=state.session_id)
        try:
            response = await self._api.ai_response(
                AiResponseRequest(
                    message=request.message,
                    context=request.context,
                    conversation_history=request.conversation_history,
                    image_attachments=request.image_attachments,
                )
            )
        except DomainError as exc:
            logger.warning("rest_fallback_failed", attempt=attempt, error_code=exc.error_code)
            await self._report_error(attempt, state, exc.message)
            return state.copy()

        if not self._is_current(attempt):
            return state.copy()
        if response.error:
            await self._report_error(attempt, state, response.response)
            return state.copy()

        actions = [
            ActionData(
                id=item.id or f"action_{index}",
                type=item.type,
                payload=item.payload,
                description=item.description,
            )
            for index, item in enumerate(response.actions or [])
        ]
        state.message = response.response
        state.actions = actions
        state.model = response.model
        state.is_streaming = False
        state.is_complete = True
        state.session_state = ClientSessionState.COMPLETED
        logger.info("rest_fallback_completed", attempt=attempt, actions=len(actions), model=response.model)

        await self._emit(attempt, self._callbacks.on_message, response.response, False)
        for action in actions:
            await self._emit(attempt, self._callbacks.on_action, action)
        await self._emit(attempt, self._callbacks.on_complete, state.copy())
        return state.copy()

    async def _report_error(
        self,
        attempt: int,
        state: StreamingState,
        message: str,
        session_state: ClientSessionState = ClientSessionState.ERROR,
    ) -> None:
        if not self._is_current(attempt):
            return
        if state.error is None:
            state.error = message
        state.is_streaming = False
        state.session_state = session_state
        await self._emit(attempt, self._callbacks.on_error, message)

    async def _emit(self, attempt: int, callback: Callback | None, *args: Any) -> None:
        if callback is None or not self._is_current(attempt):
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.exception(
                "stream_callback_failed",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(exc),
            )
