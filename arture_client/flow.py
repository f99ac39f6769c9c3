from __future__ import annotations

import re
import secrets
import threading
import time
from collections.abc import Awaitable, Callable
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from libs.common.logging import get_logger
from libs.contracts.models import ActionData, ActionStatus

logger = get_logger("arture_client.flow")

T = TypeVar("T")


class AgentPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"
    ERROR = "error"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    INFO = "info"
    ACTION = "action"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class CanvasTargetType(str, Enum):
    ELEMENT = "element"
    REGION = "region"
    CANVAS = "canvas"
    SEARCHING = "searching"


PHASE_LABELS: dict[AgentPhase, str] = {
    AgentPhase.IDLE: "생각 중",
    AgentPhase.ANALYZING: "캔버스 분석 중",
    AgentPhase.PLANNING: "계획 중",
    AgentPhase.EXECUTING: "실행 중",
    AgentPhase.VERIFYING: "검증 중",
    AgentPhase.COMPLETED: "완료",
    AgentPhase.ERROR: "오류",
}


@dataclass(slots=True)
class AgentStep:
    id: str
    phase: AgentPhase
    label: str
    status: StepStatus
    start_time: int
    description: str | None = None
    end_time: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    children: list[AgentStep] = field(default_factory=list)


@dataclass(slots=True)
class ToolExecution:
    id: str
    tool_name: str
    display_name: str
    status: StepStatus
    start_time: int
    end_time: int | None = None
    input: dict[str, Any] | None = None
    output: Any = None
    error: str | None = None


@dataclass(slots=True)
class CanvasRegion:
    x: float
    y: float
    width: float
    height: float


@dataclass(slots=True)
class CanvasTarget:
    type: CanvasTargetType
    element_id: str | None = None
    element_ids: list[str] | None = None
    region: CanvasRegion | None = None
    label: str | None = None


@dataclass(slots=True)
class FlowLogEntry:
    id: str
    timestamp: int
    level: LogLevel
    message: str
    details: str | None = None


@dataclass(slots=True)
class AgentFlowState:
    phase: AgentPhase = AgentPhase.IDLE
    is_active: bool = False
    steps: list[AgentStep] = field(default_factory=list)
    current_step_id: str | None = None
    tool_executions: list[ToolExecution] = field(default_factory=list)
    current_tool_id: str | None = None
    actions: list[ActionData] = field(default_factory=list)
    canvas_targets: list[CanvasTarget] = field(default_factory=list)
    logs: list[FlowLogEntry] = field(default_factory=list)
    progress: float = 0.0
    progress_label: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    error: str | None = None
    request_id: str | None = None


FlowListener = Callable[[AgentFlowState], None]


def format_tool_name(name: str) -> str:
    """`add_text` 같은 도구 이름을 `Add Text`처럼 읽기 좋게 바꿔요."""
    return re.sub(r"\b\w", lambda match: match.group(0).upper(), name.replace("_", " "))


def _find_step(steps: list[AgentStep], step_id: str) -> AgentStep | None:
    for step in steps:
        if step.id == step_id:
            return step
        found = _find_step(step.children, step_id)
        if found is not None:
            return found
    return None


class AgentFlow:
    """에이전트 작업 흐름의 진행 상황을 기록해요.

    단계 전이는 바깥에서 호출해서 일으켜요. 이 객체는 스트리밍 소비자를 직접 보지 않아요.
    모든 변경은 하나의 잠금 안에서 일어나고, 구독자에게는 변경이 끝난 뒤 스냅샷을 넘겨요.
    """

    _UPDATABLE_STEP_FIELDS = frozenset({"phase", "label", "description", "status", "metadata", "end_time"})

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state = AgentFlowState()
        self._listeners: list[FlowListener] = []

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def generate_id(self) -> str:
        return f"flow_{self._now_ms()}_{secrets.token_hex(3)[:5]}"

    def snapshot(self) -> AgentFlowState:
        with self._lock:
            return deepcopy(self._state)

    @property
    def phase(self) -> AgentPhase:
        return self._state.phase

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def current_step(self) -> AgentStep | None:
        with self._lock:
            if self._state.current_step_id is None:
                return None
            step = _find_step(self._state.steps, self._state.current_step_id)
            return deepcopy(step)

    @property
    def current_tool(self) -> ToolExecution | None:
        with self._lock:
            for tool in self._state.tool_executions:
                if tool.id == self._state.current_tool_id:
                    return deepcopy(tool)
            return None

    @property
    def duration_ms(self) -> int | None:
        with self._lock:
            if self._state.start_time is None:
                return None
            end = self._state.end_time if self._state.end_time is not None else self._now_ms()
            return end - self._state.start_time

    def subscribe(self, listener: FlowListener) -> Callable[[], None]:
        """변경마다 불릴 구독자를 등록하고, 등록을 해제하는 함수를 돌려줘요."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _commit(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            state = deepcopy(self._state)
        for listener in listeners:
            try:
                listener(state)
            except Exception as exc:
                logger.exception("flow_listener_failed", error=str(exc))

    # 흐름 제어

    def start_flow(self, request_id: str | None = None) -> str:
        flow_id = request_id or self.generate_id()
        with self._lock:
            self._state = AgentFlowState(
                phase=AgentPhase.ANALYZING,
                is_active=True,
                start_time=self._now_ms(),
                request_id=flow_id,
            )
        logger.debug("flow_started", request_id=flow_id)
        self._commit()
        return flow_id

    def end_flow(self, success: bool = True, error: str | None = None) -> None:
        with self._lock:
            state = self._state
            state.phase = AgentPhase.COMPLETED if success else AgentPhase.ERROR
            state.is_active = False
            state.end_time = self._now_ms()
            state.current_step_id = None
            state.current_tool_id = None
            state.canvas_targets = []
            state.progress = 100.0
            if error:
                state.error = error
        logger.debug("flow_ended", success=success, request_id=self._state.request_id)
        self._commit()

    def reset_flow(self) -> None:
        with self._lock:
            self._state = AgentFlowState()
        self._commit()

    def set_phase(self, phase: AgentPhase, label: str | None = None) -> None:
        with self._lock:
            self._state.phase = phase
            if label:
                self._state.progress_label = label
        self._commit()

    # 단계

    def add_step(
        self,
        label: str,
        *,
        phase: AgentPhase | None = None,
        status: StepStatus = StepStatus.ACTIVE,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> str:
        step_id = self.generate_id()
        with self._lock:
            step = AgentStep(
                id=step_id,
                phase=phase or self._state.phase,
                label=label,
                status=status,
                start_time=self._now_ms(),
                description=description,
                metadata=dict(metadata or {}),
            )
            parent = _find_step(self._state.steps, parent_id) if parent_id else None
            if parent is not None:
                parent.children.append(step)
            else:
                self._state.steps.append(step)
            self._state.current_step_id = step_id
        self._commit()
        return step_id

    def update_step(self, step_id: str, **updates: Any) -> None:
        unknown = set(updates) - self._UPDATABLE_STEP_FIELDS
        if unknown:
            raise ValueError(f"바꿀 수 없는 단계 필드예요: {sorted(unknown)}")
        with self._lock:
            step = _find_step(self._state.steps, step_id)
            if step is None:
                return
            for key, value in updates.items():
                setattr(step, key, value)
        self._commit()

    def complete_step(self, step_id: str, success: bool = True) -> None:
        with self._lock:
            step = _find_step(self._state.steps, step_id)
            if step is not None:
                step.status = StepStatus.COMPLETE if success else StepStatus.ERROR
                step.end_time = self._now_ms()
            if self._state.current_step_id == step_id:
                self._state.current_step_id = None
        self._commit()

    # 도구 실행

    def start_tool(self, tool_name: str, tool_input: dict[str, Any] | None = None) -> str:
        tool_id = self.generate_id()
        with self._lock:
            self._state.tool_executions.append(
                ToolExecution(
                    id=tool_id,
                    tool_name=tool_name,
                    display_name=format_tool_name(tool_name),
                    status=StepStatus.ACTIVE,
                    start_time=self._now_ms(),
                    input=tool_input,
                )
            )
            self._state.current_tool_id = tool_id
            self._state.phase = AgentPhase.EXECUTING
        self._commit()
        return tool_id

    def complete_tool(self, tool_id: str, output: Any = None, error: str | None = None) -> None:
        with self._lock:
            for tool in self._state.tool_executions:
                if tool.id == tool_id:
                    tool.status = StepStatus.ERROR if error else StepStatus.COMPLETE
                    tool.end_time = self._now_ms()
                    tool.output = output
                    tool.error = error
                    break
            if self._state.current_tool_id == tool_id:
                self._state.current_tool_id = None
        self._commit()

    async def execute_with_flow(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        tool_name: str = "operation",
    ) -> T:
        """작업 하나를 도구 실행으로 감싸 기록해요. 작업이 실패하면 기록을 남기고 예외를 다시 던져요."""
        tool_id = self.start_tool(tool_name)
        self.log(f"시작: {tool_name}", LogLevel.ACTION)
        try:
            result = await operation()
        except Exception as exc:
            self.complete_tool(tool_id, error=str(exc))
            self.log(f"실패: {tool_name} - {exc}", LogLevel.ERROR)
            raise
        self.complete_tool(tool_id, output=result)
        self.log(f"완료: {tool_name}", LogLevel.SUCCESS)
        return result

    # 액션

    def add_action(self, action: ActionData) -> bool:
        """같은 id의 액션이 이미 있으면 추가하지 않고 False를 돌려줘요."""
        with self._lock:
            if any(existing.id == action.id for existing in self._state.actions):
                return False
            self._state.actions.append(action.model_copy(deep=True))
        self._commit()
        return True

    def update_action(self, action_id: str, status: ActionStatus) -> None:
        with self._lock:
            for index, existing in enumerate(self._state.actions):
                if existing.id == action_id:
                    self._state.actions[index] = existing.model_copy(update={"status": status})
                    break
            else:
                return
        self._commit()

    # 캔버스 대상

    def set_canvas_target(self, target: CanvasTarget) -> None:
        with self._lock:
            self._state.canvas_targets = [target]
        self._commit()

    def add_canvas_target(self, target: CanvasTarget) -> None:
        with self._lock:
            self._state.canvas_targets.append(target)
        self._commit()

    def clear_canvas_targets(self) -> None:
        with self._lock:
            self._state.canvas_targets = []
        self._commit()

    # 로그와 진행률

    def log(self, message: str, level: LogLevel = LogLevel.INFO, details: str | None = None) -> None:
        with self._lock:
            self._state.logs.append(
                FlowLogEntry(
                    id=self.generate_id(),
                    timestamp=self._now_ms(),
                    level=level,
                    message=message,
                    details=details,
                )
            )
        self._commit()

    def set_progress(self, progress: float, label: str | None = None) -> None:
        with self._lock:
            self._state.progress = min(100.0, max(0.0, progress))
            if label is not None:
                self._state.progress_label = label
        self._commit()
