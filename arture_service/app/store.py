from __future__ import annotations

import asyncio
import secrets
import time
from collections import deque
from collections.abc import Callable
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from libs.common.errors import ConflictError, NotFoundError
from libs.common.logging import get_logger
from libs.contracts.models import (
    ActionData,
    ActionStatus,
    EventType,
    SessionStateToken,
    StreamEvent,
    WireModel,
    parse_stream_event,
)

logger = get_logger("arture_service.store")


class SessionState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def to_token(self) -> SessionStateToken:
        return SessionStateToken(self.value.upper())


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ERROR, SessionState.TIMEOUT})


class SessionNotFoundError(NotFoundError):
    """요청한 세션을 찾을 수 없어요."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"세션을 찾을 수 없어요: {session_id!r}")
        self.session_id = session_id


class SessionBusyError(ConflictError):
    """다른 작성자가 이미 세션을 쓰고 있어요."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"이미 응답을 생성 중인 세션이에요: {session_id!r}", error_code="SESSION_BUSY")
        self.session_id = session_id


class SessionClosedError(ConflictError):
    """이미 종료 상태인 세션이에요."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"이미 종료된 세션이에요: {session_id!r}", error_code="SESSION_CLOSED")
        self.session_id = session_id


class HistoryTruncatedError(ConflictError):
    """요청한 커서 이후의 이벤트 일부가 버퍼에서 이미 밀려났어요."""

    def __init__(self, session_id: str, since: int) -> None:
        super().__init__(
            f"요청한 위치({since}) 이후의 이벤트 일부가 이미 정리됐어요. 세션 전체를 다시 불러와 주세요.",
            error_code="HISTORY_TRUNCATED",
        )
        self.session_id = session_id
        self.since = since


@dataclass(slots=True, frozen=True)
class StoreConfig:
    timeout_ms: int = 120_000
    heartbeat_interval_ms: int = 15_000
    max_retries: int = 3
    buffer_size: int = 100


@dataclass(slots=True)
class SessionMetadata:
    owner_id: str
    conversation_id: str | None
    project_id: str | None
    model: str | None
    started_at: int
    last_activity_at: int


@dataclass(slots=True)
class SessionEvent:
    id: str
    type: EventType
    session_id: str
    timestamp: int
    sequence: int
    data: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "id": self.id,
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    def to_contract(self) -> StreamEvent:
        return parse_stream_event(self.to_wire())


@dataclass(slots=True)
class SessionAction:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    description: str | None = None
    status: ActionStatus = ActionStatus.PENDING

    def to_contract(self) -> ActionData:
        return ActionData(
            id=self.id,
            type=self.type,
            payload=deepcopy(self.payload),
            description=self.description,
            status=self.status,
        )


@dataclass(slots=True)
class Session:
    id: str
    state: SessionState
    metadata: SessionMetadata
    events: deque[SessionEvent]
    current_message: str = ""
    actions: list[SessionAction] = field(default_factory=list)
    error: str | None = None
    next_sequence: int = 0
    writer: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def oldest_retained_sequence(self) -> int:
        return self.events[0].sequence if self.events else self.next_sequence

    def find_action(self, action_id: str) -> SessionAction | None:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None


def generate_session_id() -> str:
    return f"sess_{secrets.token_hex(8)}"


def generate_event_id() -> str:
    return f"evt_{secrets.token_hex(6)}"


class InMemorySessionStore:
    """세션과 이벤트 로그를 메모리에 보관해요.

    변경은 하나의 잠금으로 직렬화하고, 읽기는 잠금 없이 깊은 복사본을 돌려줘요.
    이벤트 루프 안에서 변경 도중에 await 하지 않으니 읽는 쪽은 항상 일관된 상태만 봐요.
    """

    def __init__(self, config: StoreConfig | None = None, clock: Callable[[], float] = time.time) -> None:
        self._config = config or StoreConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._watchers: dict[str, asyncio.Event] = {}

    @property
    def config(self) -> StoreConfig:
        return self._config

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def create(
        self,
        owner_id: str,
        conversation_id: str | None = None,
        project_id: str | None = None,
    ) -> Session:
        async with self._lock:
            now = self.now_ms()
            session = Session(
                id=generate_session_id(),
                state=SessionState.CREATED,
                metadata=SessionMetadata(
                    owner_id=owner_id,
                    conversation_id=conversation_id,
                    project_id=project_id,
                    model=None,
                    started_at=now,
                    last_activity_at=now,
                ),
                events=deque(maxlen=self._config.buffer_size),
            )
            self._sessions[session.id] = session
            self._watchers[session.id] = asyncio.Event()
            logger.info("session_created", session_id=session.id, owner_id=owner_id)
            return deepcopy(session)

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return deepcopy(session) if session is not None else None

    def require(self, session_id: str) -> Session:
        return deepcopy(self._require(session_id))

    def list_ids(self) -> list[str]:
        return list(self._sessions)

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _touch(self, session: Session) -> None:
        session.metadata.last_activity_at = max(session.metadata.last_activity_at, self.now_ms())

    def _notify(self, session_id: str) -> None:
        watcher = self._watchers.get(session_id)
        if watcher is not None:
            watcher.set()
        if session_id in self._sessions:
            self._watchers[session_id] = asyncio.Event()
        else:
            self._watchers.pop(session_id, None)

    def _writable(self, session_id: str, operation: str) -> Session | None:
        session = self._require(session_id)
        if session.is_terminal:
            logger.warning(
                "session_mutation_ignored",
                session_id=session_id,
                operation=operation,
                state=session.state.value,
            )
            return None
        return session

    def watch(self, session_id: str) -> asyncio.Event:
        """다음 변경 때 set 되는 이벤트를 돌려줘요. 세션이 사라져도 set 돼요."""
        self._require(session_id)
        return self._watchers[session_id]

    async def wait_for_change(self, session_id: str, timeout: float) -> bool:
        """변경이 생기면 True, 제한 시간이 지나면 False를 돌려줘요."""
        changed = self.watch(session_id)
        try:
            await asyncio.wait_for(changed.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def set_state(self, session_id: str, state: SessionState, error: str | None = None) -> Session | None:
        async with self._lock:
            session = self._writable(session_id, "set_state")
            if session is None:
                return None
            previous = session.state
            session.state = state
            if error:
                session.error = error
            self._touch(session)
            self._notify(session_id)
            logger.info(
                "session_state_changed",
                session_id=session_id,
                previous=previous.value,
                state=state.value,
                error=error,
            )
            return deepcopy(session)

    async def set_model(self, session_id: str, model: str) -> None:
        async with self._lock:
            session = self._writable(session_id, "set_model")
            if session is None:
                return
            session.metadata.model = model
            self._touch(session)

    async def append_event(
        self,
        session_id: str,
        event_type: EventType,
        data: WireModel | dict[str, Any],
    ) -> SessionEvent | None:
        """이벤트를 로그에 붙이고 메시지/액션 이벤트라면 파생 상태도 같은 잠금 안에서 갱신해요."""
        async with self._lock:
            session = self._writable(session_id, "append_event")
            if session is None:
                return None
            payload = data.to_wire() if isinstance(data, WireModel) else deepcopy(data)
            event = SessionEvent(
                id=generate_event_id(),
                type=event_type,
                session_id=session_id,
                timestamp=self.now_ms(),
                sequence=session.next_sequence,
                data=payload,
            )
            session.next_sequence += 1
            session.events.append(event)
            if event_type is EventType.MESSAGE:
                content = str(payload.get("content", ""))
                if payload.get("isPartial", False):
                    session.current_message += content
                else:
                    session.current_message = content
            elif event_type is EventType.ACTION:
                self._merge_action(session, payload)
            self._touch(session)
            self._notify(session_id)
            return deepcopy(event)

    def _merge_action(self, session: Session, payload: dict[str, Any]) -> None:
        action_id = str(payload.get("id", ""))
        existing = session.find_action(action_id)
        status = ActionStatus(payload.get("status", ActionStatus.PENDING.value))
        if existing is None:
            session.actions.append(
                SessionAction(
                    id=action_id,
                    type=str(payload.get("type", "")),
                    payload=deepcopy(payload.get("payload") or {}),
                    description=payload.get("description"),
                    status=status,
                )
            )
            return
        # 한 번 관측된 액션의 type은 바뀌지 않아요.
        existing.payload = deepcopy(payload.get("payload") or existing.payload)
        existing.description = payload.get("description", existing.description)
        existing.status = status

    async def append_message(self, session_id: str, chunk: str) -> None:
        async with self._lock:
            session = self._writable(session_id, "append_message")
            if session is None:
                return
            session.current_message += chunk
            self._touch(session)
            self._notify(session_id)

    async def replace_message(self, session_id: str, text: str) -> None:
        async with self._lock:
            session = self._writable(session_id, "replace_message")
            if session is None:
                return
            session.current_message = text
            self._touch(session)
            self._notify(session_id)

    async def add_action(self, session_id: str, action: SessionAction) -> bool:
        """같은 id가 이미 있으면 추가하지 않고 False를 돌려줘요."""
        async with self._lock:
            session = self._writable(session_id, "add_action")
            if session is None or session.find_action(action.id) is not None:
                return False
            session.actions.append(deepcopy(action))
            self._touch(session)
            self._notify(session_id)
            return True

    async def update_action_status(
        self,
        session_id: str,
        action_id: str,
        status: ActionStatus,
    ) -> SessionEvent | None:
        """상태를 바꾸고 재생으로도 같은 결과가 나오도록 action 이벤트를 함께 남겨요."""
        session = self._require(session_id)
        action = session.find_action(action_id)
        if action is None:
            raise NotFoundError(f"액션을 찾을 수 없어요: {action_id!r}")
        updated = action.to_contract().model_copy(update={"status": status})
        return await self.append_event(session_id, EventType.ACTION, updated)

    def events_since(self, session_id: str, sequence: int) -> list[SessionEvent]:
        session = self._require(session_id)
        return [deepcopy(event) for event in session.events if event.sequence > sequence]

    def has_gap(self, session_id: str, since: int) -> bool:
        session = self._require(session_id)
        return since + 1 < session.oldest_retained_sequence

    async def claim_writer(self, session_id: str, owner: str) -> None:
        async with self._lock:
            session = self._require(session_id)
            if session.is_terminal:
                raise SessionClosedError(session_id)
            if session.writer is not None and session.writer != owner:
                raise SessionBusyError(session_id)
            session.writer = owner
            self._touch(session)

    async def release_writer(self, session_id: str, owner: str) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.writer == owner:
                session.writer = None
                self._touch(session)

    async def evict_stale(self, max_age_ms: int) -> list[str]:
        async with self._lock:
            now = self.now_ms()
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if session.writer is None and now - session.metadata.last_activity_at > max_age_ms
            ]
            for session_id in stale:
                del self._sessions[session_id]
                self._notify(session_id)
            if stale:
                logger.info("sessions_evicted", count=len(stale), remaining=len(self._sessions))
            return stale
