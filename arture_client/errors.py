from __future__ import annotations

from libs.common.errors import ConflictError, UpstreamTransientError


class StreamTransportError(UpstreamTransientError):
    def __init__(self, message: str = "스트리밍 연결에 실패했어요.") -> None:
        super().__init__(message)


class SessionCreationError(UpstreamTransientError):
    def __init__(self, message: str = "스트리밍 세션을 만들지 못했어요.") -> None:
        super().__init__(message)


class HistoryGapError(ConflictError):
    """서버가 요청한 위치 이전의 이벤트를 이미 버려서 이어 받을 수 없을 때 나요."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"세션 이벤트 기록이 잘려서 이어 받을 수 없어요: {session_id}", error_code="HISTORY_TRUNCATED")
        self.session_id = session_id
