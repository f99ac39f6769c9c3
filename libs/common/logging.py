from __future__ import annotations

import logging
import sys
from typing import TextIO, cast

import structlog
from structlog.typing import FilteringBoundLogger, Processor


def _resolve_level(level: str) -> int:
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        return logging.INFO
    return numeric_level


def configure_logging(level: str = "INFO", *, json_output: bool = True, stream: TextIO | None = None) -> None:
    """structlog 출력을 설정해요.

    서버는 JSON 한 줄씩 stdout으로 남겨요. 터미널 클라이언트는 응답 본문이 stdout을 쓰기 때문에
    `json_output=False, stream=sys.stderr`로 사람이 읽기 쉬운 형태를 stderr에 남겨요.
    """
    numeric_level = _resolve_level(level)
    target = stream or sys.stdout
    logging.basicConfig(format="%(message)s", stream=target, level=numeric_level)
    renderer: Processor = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> FilteringBoundLogger:
    return cast(FilteringBoundLogger, structlog.get_logger(name))
