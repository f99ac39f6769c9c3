from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum

from libs.contracts.models import ActionData, SessionStateToken, StreamEvent


class ClientSessionState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"

    @classmethod
    def from_token(cls, token: SessionStateToken | str) -> ClientSessionState:
        raw = token.value if isinstance(token, SessionStateToken) else token
        return cls(raw.lower())


@dataclass(slots=True)
class StreamingState:
    is_streaming: bool = False
    session_id: str | None = None
    message: str = ""
    actions: list[ActionData] = field(default_factory=list)
    events: list[StreamEvent] = field(default_factory=list)
    error: str | None = None
    is_complete: bool = False
    model: str | None = None
    session_state: ClientSessionState | None = None
    last_sequence: int = -1

    def copy(self) -> StreamingState:
        return deepcopy(self)

    @classmethod
    def streaming(cls) -> StreamingState:
        return cls(is_streaming=True)


@dataclass(slots=True)
class ConsumerOptions:
    fallback_to_rest: bool = True
    timeout_ms: int = 120_000
