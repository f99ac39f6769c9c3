from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from libs.common.errors import DomainError, ErrorEnvelope
from libs.common.logging import get_logger

_INTERNAL_ERROR_MESSAGE = "예상하지 못한 내부 오류가 발생했어요."


def register_exception_handlers(app: FastAPI, logger_name: str) -> None:
    """도메인 오류는 각 클래스의 `http_status`로, 나머지는 500 envelope로 응답해요."""
    logger = get_logger(logger_name)

    @app.exception_handler(DomainError)
    async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
        envelope = ErrorEnvelope.from_error(exc)
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "domain_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.http_status,
            trace_id=envelope.trace_id,
            error_code=envelope.error_code,
            message=envelope.message,
        )
        return JSONResponse(status_code=exc.http_status, content=envelope.to_payload())

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        envelope = ErrorEnvelope(error_code="INTERNAL_ERROR", message=_INTERNAL_ERROR_MESSAGE, retryable=True)
        logger.exception(
            "unhandled_error",
            path=request.url.path,
            method=request.method,
            trace_id=envelope.trace_id,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content=envelope.to_payload())
