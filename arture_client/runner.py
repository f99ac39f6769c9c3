from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from arture_client.api_client import ArtureApiClient
from arture_client.consumer import StreamCallbacks, StreamingConsumer
from arture_client.flow import PHASE_LABELS, AgentFlow, AgentPhase, CanvasTarget, CanvasTargetType, LogLevel
from arture_client.state import ConsumerOptions, StreamingState
from libs.common.logging import get_logger
from libs.contracts.models import ActionData, ActionStatus, GenerationInput

logger = get_logger("arture_client.runner")

ActionExecutor = Callable[[ActionData], Awaitable[Any]]


class FlowRunner:
    """스트리밍 소비자의 콜백을 에이전트 흐름 단계로 옮겨 적어요.

    분석 중에 첫 메시지가 오면 계획 단계로, 액션이 오면 실행 단계로, 완료되면 검증을 거쳐 완료로 넘어가요.
    액션 하나가 도구 실행 하나로 기록돼요.
    """

    def __init__(
        self,
        api: ArtureApiClient,
        flow: AgentFlow | None = None,
        options: ConsumerOptions | None = None,
        *,
        action_executor: ActionExecutor | None = None,
        on_message: Callable[[str, bool], Awaitable[None] | None] | None = None,
        idle_timeout_ms: int | None = None,
    ) -> None:
        self.flow = flow or AgentFlow()
        self._action_executor = action_executor
        self._on_message = on_message
        self.consumer = StreamingConsumer(
            api,
            StreamCallbacks(
                on_action=self._handle_action,
                on_message=self._handle_message,
                on_complete=self._handle_complete,
                on_error=self._handle_error,
            ),
            options,
            idle_timeout_ms=idle_timeout_ms,
        )

    async def run(
        self,
        request: GenerationInput,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> StreamingState:
        self.flow.start_flow()
        self.flow.log("요청을 보냈어요.", LogLevel.INFO, details=request.message[:200])
        self.consumer.stream_response(request, conversation_id, project_id)
        state = await self.consumer.wait()
        if self.flow.is_active:
            # 취소처럼 콜백 없이 끝난 경우에도 흐름은 닫아 둬요.
            self.flow.end_flow(success=state.error is None, error=state.error)
        return state

    def cancel(self) -> None:
        self.consumer.cancel()
        if self.flow.is_active:
            self.flow.log("요청을 취소했어요.", LogLevel.WARNING)
            self.flow.end_flow(success=True)

    async def _handle_message(self, content: str, is_partial: bool) -> None:
        if self.flow.phase == AgentPhase.ANALYZING:
            self.flow.set_phase(AgentPhase.PLANNING, PHASE_LABELS[AgentPhase.PLANNING])
        if self._on_message is not None:
            result = self._on_message(content, is_partial)
            if result is not None:
                await result

    async def _handle_action(self, action: ActionData) -> None:
        if not self.flow.add_action(action):
            return
        element_id = action.payload.get("elementId") or action.payload.get("element_id")
        if isinstance(element_id, str):
            self.flow.set_canvas_target(
                CanvasTarget(type=CanvasTargetType.ELEMENT, element_id=element_id, label=action.description)
            )

        if self._action_executor is None:
            tool_id = self.flow.start_tool(action.type, dict(action.payload))
            self.flow.complete_tool(tool_id, output=action.payload)
            self.flow.log(f"액션을 받았어요: {action.type}", LogLevel.ACTION, details=action.description)
            return

        executor = self._action_executor
        self.flow.update_action(action.id, ActionStatus.EXECUTING)
        try:
            await self.flow.execute_with_flow(lambda: executor(action), tool_name=action.type)
        except Exception as exc:
            logger.warning("action_execution_failed", action_id=action.id, action_type=action.type, error=str(exc))
            self.flow.update_action(action.id, ActionStatus.ERROR)
            return
        self.flow.update_action(action.id, ActionStatus.COMPLETE)

    def _handle_complete(self, state: StreamingState) -> None:
        self.flow.set_phase(AgentPhase.VERIFYING, PHASE_LABELS[AgentPhase.VERIFYING])
        self.flow.clear_canvas_targets()
        self.flow.log(
            "응답을 모두 받았어요.",
            LogLevel.SUCCESS,
            details=f"actions={len(state.actions)} model={state.model or '-'}",
        )
        self.flow.end_flow(success=True)

    def _handle_error(self, message: str) -> None:
        self.flow.log(message, LogLevel.ERROR)
        self.flow.end_flow(success=False, error=message)
