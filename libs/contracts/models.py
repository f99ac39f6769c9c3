from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """와이어에서는 camelCase, 파이썬에서는 snake_case로 다뤄요."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionStateToken(str, Enum):
    CREATED = "CREATED"
    CONNECTING = "CONNECTING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETE = "complete"
    ERROR = "error"


class EventType(str, Enum):
    SESSION_START = "session_start"
    CHUNK = "chunk"
    ACTION = "action"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    MESSAGE = "message"
    ERROR = "error"
    COMPLETE = "complete"
    HEARTBEAT = "heartbeat"


# 이벤트 타입별 페이로드예요.


class SessionStartData(WireModel):
    session_id: str
    timestamp: int


class ChunkData(WireModel):
    text: str


class ActionData(WireModel):
    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None
    status: ActionStatus = ActionStatus.PENDING


class ToolCallData(WireModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultData(WireModel):
    id: str
    name: str
    ok: bool
    result: dict[str, Any] | None = None
    error: str | None = None


class MessageData(WireModel):
    content: str
    is_partial: bool
    role: Literal["assistant", "user", "system"] = "assistant"


# 세션 로그가 잘려서 이어 보낼 수 없을 때 쓰는 오류 코드예요. 이 레코드는 로그에 저장되지 않아서 id가 비어 있어요.
HISTORY_TRUNCATED_CODE = "HISTORY_TRUNCATED"


class ErrorData(WireModel):
    message: str
    code: str | None = None


class CompleteData(WireModel):
    success: bool
    model: str = ""
    actions_count: int = 0


class HeartbeatData(WireModel):
    pass


# 이벤트 봉투예요. `type`이 판별자 역할을 해요.


class _EventBase(WireModel):
    id: str
    session_id: str | None = None
    sequence: int
    timestamp: int


class SessionStartEvent(_EventBase):
    type: Literal["session_start"] = "session_start"
    data: SessionStartData


class ChunkEvent(_EventBase):
    type: Literal["chunk"] = "chunk"
    data: ChunkData


class ActionEvent(_EventBase):
    type: Literal["action"] = "action"
    data: ActionData


class ToolCallEvent(_EventBase):
    type: Literal["tool_call"] = "tool_call"
    data: ToolCallData


class ToolResultEvent(_EventBase):
    type: Literal["tool_result"] = "tool_result"
    data: ToolResultData


class MessageEvent(_EventBase):
    type: Literal["message"] = "message"
    data: MessageData


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    data: ErrorData


class CompleteEvent(_EventBase):
    type: Literal["complete"] = "complete"
    data: CompleteData


class HeartbeatEvent(_EventBase):
    """하트비트는 세션 로그에 저장되지 않아서 id와 sequence가 없어요."""

    type: Literal["heartbeat"] = "heartbeat"
    id: str = ""
    sequence: int = -1
    data: HeartbeatData = Field(default_factory=HeartbeatData)


StreamEvent = Annotated[
    Union[
        SessionStartEvent,
        ChunkEvent,
        ActionEvent,
        ToolCallEvent,
        ToolResultEvent,
        MessageEvent,
        ErrorEvent,
        CompleteEvent,
        HeartbeatEvent,
    ],
    Field(discriminator="type"),
]

EVENT_DATA_MODELS: dict[EventType, type[WireModel]] = {
    EventType.SESSION_START: SessionStartData,
    EventType.CHUNK: ChunkData,
    EventType.ACTION: ActionData,
    EventType.TOOL_CALL: ToolCallData,
    EventType.TOOL_RESULT: ToolResultData,
    EventType.MESSAGE: MessageData,
    EventType.ERROR: ErrorData,
    EventType.COMPLETE: CompleteData,
    EventType.HEARTBEAT: HeartbeatData,
}

_stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_stream_event(value: object) -> StreamEvent:
    """dict를 이벤트로 검증해요. 형식이 맞지 않으면 pydantic.ValidationError가 나요."""
    return _stream_event_adapter.validate_python(value)


def parse_stream_event_json(raw: str | bytes) -> StreamEvent:
    return _stream_event_adapter.validate_json(raw)


def reconstruct(events: Iterable[StreamEvent]) -> tuple[str, list[ActionData]]:
    """이벤트를 sequence 순서대로 재생해서 메시지와 액션 목록을 다시 만들어요.

    부분 메시지는 이어 붙이고, 부분이 아닌 메시지는 전체를 교체해요.
    같은 id의 액션은 한 번만 들어가고, 이후 이벤트는 type을 제외한 필드만 갱신해요.
    """
    message = ""
    actions: dict[str, ActionData] = {}
    for event in sorted(events, key=lambda item: item.sequence):
        if isinstance(event, MessageEvent):
            if event.data.is_partial:
                message += event.data.content
            else:
                message = event.data.content
        elif isinstance(event, ActionEvent):
            existing = actions.get(event.data.id)
            if existing is None:
                actions[event.data.id] = event.data.model_copy(deep=True)
            else:
                actions[event.data.id] = event.data.model_copy(update={"type": existing.type}, deep=True)
    return message, list(actions.values())


# 요청/응답 DTO예요.


class CanvasSize(WireModel):
    width: float
    height: float


class CanvasContext(WireModel):
    """캔버스 쪽에서 넘겨주는 컨텍스트예요. 내용은 해석하지 않고 그대로 전달해요."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    elements: list[dict[str, Any]] | None = None
    canvas_size: CanvasSize | None = None
    background_color: str | None = None
    summary: str | None = None
    selected_element_ids: list[str] | None = None


class ConversationTurn(WireModel):
    role: Literal["user", "assistant"]
    content: str


class ImageAttachment(WireModel):
    id: str
    name: str
    cloudinary_url: str | None = None
    thumbnail: str | None = None
    data_url: str | None = None


class GenerationInput(WireModel):
    message: str
    context: CanvasContext | None = None
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    image_attachments: list[ImageAttachment] = Field(default_factory=list)


class StartSessionRequest(WireModel):
    conversation_id: str | None = None
    project_id: str | None = None


class StartSessionResponse(WireModel):
    session_id: str
    state: SessionStateToken
    created_at: int


class StreamRequest(GenerationInput):
    session_id: str


class AiResponseRequest(GenerationInput):
    pass


class AiResponseAction(WireModel):
    id: str | None = None
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None


class AiResponse(WireModel):
    response: str
    is_configured: bool
    actions: list[AiResponseAction] | None = None
    model: str | None = None
    error: bool | None = None


class SessionSnapshot(WireModel):
    session_id: str
    state: SessionStateToken
    events: list[StreamEvent] = Field(default_factory=list)
    actions: list[ActionData] = Field(default_factory=list)
    current_message: str = ""
    error: str | None = None
    model: str | None = None
    conversation_id: str | None = None
    project_id: str | None = None
    started_at: int
    last_activity_at: int


class SessionEventsResponse(WireModel):
    session_id: str
    state: SessionStateToken
    events: list[StreamEvent] = Field(default_factory=list)
    actions: list[ActionData] = Field(default_factory=list)
    current_message: str = ""
    truncated: bool = False
