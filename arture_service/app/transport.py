from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from arture_service.app.store import InMemorySessionStore, SessionEvent, SessionNotFoundError
from libs.common.logging import get_logger
from libs.contracts.models import HISTORY_TRUNCATED_CODE

logger = get_logger("arture_service.transport")

DONE_SENTINEL = "[DONE]"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse_event(event: SessionEvent) -> str:
    body = json.dumps(event.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return f"id: {event.id}\nevent: {event.type.value}\ndata: {body}\n\n"


def format_sse_heartbeat(timestamp_ms: int) -> str:
    # 하트비트는 로그에 남지 않으니 id 줄을 붙이지 않아요.
    body = json.dumps({"type": "heartbeat", "timestamp": timestamp_ms}, separators=(",", ":"))
    return f"event: heartbeat\ndata: {body}\n\n"


def format_sse_done() -> str:
    return f"event: done\ndata: {DONE_SENTINEL}\n\n"


def format_sse_gap(session_id: str, cursor: int, oldest: int, timestamp_ms: int) -> str:
    """읽는 쪽이 버퍼보다 뒤처졌다는 오류 레코드예요. 받은 쪽은 스냅샷으로 상태를 다시 맞춰야 해요."""
    body = json.dumps(
        {
            "type": "error",
            "id": "",
            "sessionId": session_id,
            "sequence": -1,
            "timestamp": timestamp_ms,
            "data": {
                "message": f"sequence {cursor + 1}부터 {oldest - 1}까지의 이벤트가 이미 버려졌어요.",
                "code": HISTORY_TRUNCATED_CODE,
            },
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return f"event: error\ndata: {body}\n\n"


async def stream_session_events(
    store: InMemorySessionStore,
    session_id: str,
    *,
    since: int = -1,
    heartbeat_interval_seconds: float,
    max_duration_seconds: float,
) -> AsyncIterator[str]:
    """세션 로그를 `since` 이후부터 순서대로 흘려보내요.

    세션이 종료 상태가 되고 남은 이벤트를 모두 보내면 종료 표식을 보내요.
    최대 시간을 넘기거나 세션이 정리되면 표식 없이 끊어서 클라이언트가 끊김으로 인식하게 해요.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_duration_seconds
    cursor = since

    while True:
        try:
            changed = store.watch(session_id)
        except SessionNotFoundError:
            logger.info("sse_session_gone", session_id=session_id, cursor=cursor)
            return
        session = store.get(session_id)
        if session is None:
            return

        if cursor + 1 < session.oldest_retained_sequence:
            # 종료 표식 없이 끊어서 정상 종료와 구분되게 해요.
            logger.warning(
                "sse_reader_fell_behind",
                session_id=session_id,
                cursor=cursor,
                oldest=session.oldest_retained_sequence,
            )
            yield format_sse_gap(session_id, cursor, session.oldest_retained_sequence, store.now_ms())
            return

        for event in session.events:
            if event.sequence <= cursor:
                continue
            cursor = event.sequence
            yield format_sse_event(event)

        if session.is_terminal:
            logger.info("sse_stream_done", session_id=session_id, state=session.state.value, cursor=cursor)
            yield format_sse_done()
            return

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("sse_max_duration_reached", session_id=session_id, cursor=cursor)
            return

        try:
            await asyncio.wait_for(changed.wait(), timeout=min(heartbeat_interval_seconds, remaining))
        except TimeoutError:
            yield format_sse_heartbeat(store.now_ms())
