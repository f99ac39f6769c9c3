from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True)
class ErrorEnvelope:
    """HTTP 오류 응답 본문이에요. 서버와 클라이언트가 같은 필드 이름을 써요."""

    error_code: str
    message: str
    retryable: bool
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_error(cls, exc: DomainError) -> ErrorEnvelope:
        return cls(error_code=exc.error_code, message=exc.message, retryable=exc.retryable)

    @classmethod
    def from_payload(cls, payload: object) -> ErrorEnvelope | None:
        if not isinstance(payload, dict) or "error_code" not in payload:
            return None
        return cls(
            error_code=str(payload.get("error_code", "")),
            message=str(payload.get("message") or ""),
            retryable=bool(payload.get("retryable", False)),
            trace_id=str(payload.get("trace_id") or ""),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class DomainError(Exception):
    http_status: int = 400

    def __init__(self, error_code: str, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class AuthenticationError(DomainError):
    http_status = 401

    def __init__(self, message: str = "인증에 실패했어요.") -> None:
        super().__init__("AUTH_FAILED", message, retryable=False)


class NotFoundError(DomainError):
    http_status = 404

    def __init__(self, message: str = "대상을 찾지 못했어요.") -> None:
        super().__init__("NOT_FOUND", message, retryable=False)


class ConflictError(DomainError):
    """세션 상태 때문에 거절된 요청이에요. 세부 사유는 `error_code`로 구분해요."""

    http_status = 409

    def __init__(self, message: str = "현재 상태에서는 처리할 수 없는 요청이에요.", error_code: str = "CONFLICT") -> None:
        super().__init__(error_code, message, retryable=False)


class UpstreamTransientError(DomainError):
    http_status = 502

    def __init__(self, message: str = "외부 시스템에 일시적인 문제가 발생했어요.") -> None:
        super().__init__("UPSTREAM_TRANSIENT", message, retryable=True)


class RateLimitError(DomainError):
    http_status = 429

    def __init__(self, message: str = "요청 제한을 초과했어요.") -> None:
        super().__init__("RATE_LIMITED", message, retryable=True)


class StreamTimeoutError(DomainError):
    """내장 `TimeoutError`와 이름이 겹치지 않도록 따로 이름을 붙였어요."""

    http_status = 504

    def __init__(self, message: str = "작업 시간이 초과됐어요.") -> None:
        super().__init__("TIMEOUT", message, retryable=True)


class ConfigurationError(DomainError):
    http_status = 500

    def __init__(self, message: str = "설정이 올바르지 않아요.") -> None:
        super().__init__("CONFIGURATION_ERROR", message, retryable=False)
