from __future__ import annotations

import pytest
from arture_client.flow import (
    AgentFlow,
    AgentFlowState,
    AgentPhase,
    CanvasTarget,
    CanvasTargetType,
    LogLevel,
    StepStatus,
    format_tool_name,
)

from libs.contracts.models import ActionData, ActionStatus
from tests.conftest import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def flow(clock: FakeClock) -> AgentFlow:
    return AgentFlow(clock=clock)


def test_start_and_end_flow_track_duration(flow: AgentFlow, clock: FakeClock) -> None:
    assert flow.duration_ms is None

    request_id = flow.start_flow()
    assert request_id.startswith("flow_")
    assert flow.phase is AgentPhase.ANALYZING
    assert flow.is_active

    clock.advance(2.5)
    flow.end_flow()

    state = flow.snapshot()
    assert state.phase is AgentPhase.COMPLETED
    assert not state.is_active
    assert state.progress == 100.0
    assert flow.duration_ms == 2500


def test_end_flow_with_error_clears_transient_state(flow: AgentFlow) -> None:
    flow.start_flow("req-1")
    flow.add_step("분석")
    flow.start_tool("add_text")
    flow.set_canvas_target(CanvasTarget(type=CanvasTargetType.CANVAS))

    flow.end_flow(success=False, error="실패했어요")

    state = flow.snapshot()
    assert state.request_id == "req-1"
    assert state.phase is AgentPhase.ERROR
    assert state.error == "실패했어요"
    assert state.current_step_id is None
    assert state.current_tool_id is None
    assert state.canvas_targets == []


def test_start_flow_resets_previous_run(flow: AgentFlow) -> None:
    flow.start_flow()
    flow.log("이전 기록")
    flow.start_flow()
    assert flow.snapshot().logs == []

    flow.reset_flow()
    assert flow.snapshot() == AgentFlowState()


def test_steps_nest_and_complete(flow: AgentFlow) -> None:
    flow.start_flow()
    parent = flow.add_step("계획", phase=AgentPhase.PLANNING)
    child = flow.add_step("세부 단계", parent_id=parent, metadata={"n": 1})

    current = flow.current_step
    assert current is not None and current.id == child
    assert current.phase is AgentPhase.ANALYZING

    flow.update_step(child, description="설명", status=StepStatus.PENDING)
    flow.complete_step(child, success=False)

    state = flow.snapshot()
    assert len(state.steps) == 1
    nested = state.steps[0].children[0]
    assert nested.description == "설명"
    assert nested.status is StepStatus.ERROR
    assert nested.end_time is not None
    assert flow.current_step is None


def test_update_step_rejects_unknown_fields(flow: AgentFlow) -> None:
    step = flow.add_step("x")
    with pytest.raises(ValueError):
        flow.update_step(step, id="other")


def test_tools_record_display_name_and_result(flow: AgentFlow) -> None:
    flow.start_flow()
    tool_id = flow.start_tool("change_canvas_background", {"color": "#fff"})

    assert flow.phase is AgentPhase.EXECUTING
    current = flow.current_tool
    assert current is not None
    assert current.display_name == "Change Canvas Background"

    flow.complete_tool(tool_id, error="안 돼요")
    tool = flow.snapshot().tool_executions[0]
    assert tool.status is StepStatus.ERROR
    assert tool.error == "안 돼요"
    assert flow.current_tool is None


def test_format_tool_name() -> None:
    assert format_tool_name("add_text") == "Add Text"
    assert format_tool_name("search") == "Search"


@pytest.mark.asyncio
async def test_execute_with_flow_logs_success_and_failure(flow: AgentFlow) -> None:
    async def succeed() -> int:
        return 42

    async def fail() -> int:
        raise RuntimeError("boom")

    assert await flow.execute_with_flow(succeed, tool_name="calc") == 42
    with pytest.raises(RuntimeError):
        await flow.execute_with_flow(fail, tool_name="calc")

    state = flow.snapshot()
    assert [tool.status for tool in state.tool_executions] == [StepStatus.COMPLETE, StepStatus.ERROR]
    assert state.tool_executions[0].output == 42
    assert [log.message for log in state.logs] == ["시작: calc", "완료: calc", "시작: calc", "실패: calc - boom"]
    assert [log.level for log in state.logs][-1] is LogLevel.ERROR


def test_actions_are_deduplicated_and_updated(flow: AgentFlow) -> None:
    action = ActionData(id="a1", type="add_text")

    assert flow.add_action(action) is True
    assert flow.add_action(action) is False
    flow.update_action("a1", ActionStatus.COMPLETE)
    flow.update_action("missing", ActionStatus.ERROR)

    actions = flow.snapshot().actions
    assert len(actions) == 1
    assert actions[0].status is ActionStatus.COMPLETE


def test_canvas_targets(flow: AgentFlow) -> None:
    flow.add_canvas_target(CanvasTarget(type=CanvasTargetType.ELEMENT, element_id="e1"))
    flow.add_canvas_target(CanvasTarget(type=CanvasTargetType.SEARCHING))
    assert len(flow.snapshot().canvas_targets) == 2

    flow.set_canvas_target(CanvasTarget(type=CanvasTargetType.REGION))
    assert [t.type for t in flow.snapshot().canvas_targets] == [CanvasTargetType.REGION]

    flow.clear_canvas_targets()
    assert flow.snapshot().canvas_targets == []


def test_progress_is_clamped(flow: AgentFlow) -> None:
    flow.set_progress(150, "거의 다 됐어요")
    assert flow.snapshot().progress == 100.0
    flow.set_progress(-5)
    state = flow.snapshot()
    assert state.progress == 0.0
    assert state.progress_label == "거의 다 됐어요"


def test_subscribers_receive_snapshots_until_unsubscribed(flow: AgentFlow) -> None:
    seen: list[AgentPhase] = []

    def broken(state: AgentFlowState) -> None:
        raise RuntimeError("listener failed")

    flow.subscribe(broken)
    unsubscribe = flow.subscribe(lambda state: seen.append(state.phase))

    flow.start_flow()
    flow.set_phase(AgentPhase.PLANNING, "계획 중")
    unsubscribe()
    flow.end_flow()

    assert seen == [AgentPhase.ANALYZING, AgentPhase.PLANNING]
    assert flow.snapshot().progress_label == "계획 중"


def test_snapshot_is_isolated(flow: AgentFlow) -> None:
    flow.log("원래", LogLevel.INFO)
    state = flow.snapshot()
    state.logs.clear()
    assert len(flow.snapshot().logs) == 1
