"""스트리밍 중인 모델 출력에서 액션과 메시지를 점진적으로 뽑아내는 파서예요.

모델은 `{"message": "...", "actions": [...]}` 형태의 JSON을 토큰 단위로 흘려보내요.
조각 경계는 토큰, 문자열 이스케이프, 괄호 어디서든 끊길 수 있어서 파서는 버퍼를 유지하며
구조가 닫히는 순간에만 엄격하게 파싱해요. 구조가 아직 열려 있으면 정규식 기반의 낮은 신뢰도
경로로 메시지 앞부분만 미리 보여줘요. 이 모듈의 공개 함수는 절대 예외를 던지지 않아요.
"""

from __future__ import annotations

import json
import re
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from libs.common.logging import get_logger

logger = get_logger("arture_service.parser")

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}
_MESSAGE_KEYS = ("message", "response", "content")

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_PARTIAL_MESSAGE = re.compile(r'"message"\s*:\s*"((?:[^"\\]|\\.)*)(\\?)', re.DOTALL)
_INCOMPLETE_UNICODE_ESCAPE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")
_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OPEN_CODE_FENCE = re.compile(r"```(?:json)?[\s\S]*$")
_ACTION_START = re.compile(r'\{\s*"(?:id|type)"\s*:\s*"[^"]+"')

_MIN_PROSE_LENGTH = 5


class ScanMode(str, Enum):
    NORMAL = "normal"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


class ResultSource(str, Enum):
    STRUCTURED = "structured"
    PARTIAL = "partial"
    RAW = "raw"


@dataclass(slots=True)
class ParsedAction:
    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


@dataclass(slots=True)
class ParserState:
    buffer: str = ""
    extracted_actions: list[ParsedAction] = field(default_factory=list)
    # 부분 추출과 엄격 파싱이 함께 키워가는 메시지 접두사예요. 뒤로 다시 쓰지 않아요.
    extracted_message: str = ""
    # 엄격 파싱으로 확정된 메시지예요. 접두사와 어긋나면 finalize에서 교정으로 쓰여요.
    strict_message: str | None = None
    mode: ScanMode = ScanMode.NORMAL
    stack: list[str] = field(default_factory=list)
    start: int = -1
    offset: int = 0
    final: FinalResult | None = None

    @property
    def seen_action_ids(self) -> set[str]:
        return {action.id for action in self.extracted_actions}


@dataclass(slots=True)
class ChunkResult:
    new_actions: list[ParsedAction]
    new_message: str


@dataclass(slots=True)
class ParsedResponse:
    message: str
    actions: list[ParsedAction]
    source: ResultSource
    raw_text: str


@dataclass(slots=True)
class FinalResult:
    message: str
    actions: list[ParsedAction]
    # finalize 단계에서 새로 건진 액션만 담아요.
    new_actions: list[ParsedAction]
    raw_text: str


def create_parser_state() -> ParserState:
    return ParserState()


def _generate_action_id(index: int) -> str:
    return f"act_{int(time.time() * 1000)}_{index}_{secrets.token_hex(3)}"


def _step(mode: ScanMode, stack: list[str], char: str) -> ScanMode:
    if mode is ScanMode.ESCAPED:
        return ScanMode.IN_STRING
    if mode is ScanMode.IN_STRING:
        if char == "\\":
            return ScanMode.ESCAPED
        if char == '"':
            return ScanMode.NORMAL
        return mode
    # 구조 바깥의 따옴표는 산문으로 보고 무시해요.
    if char == '"' and stack:
        return ScanMode.IN_STRING
    if char in _OPENERS:
        stack.append(char)
    elif char in _CLOSERS and stack:
        opener = _CLOSERS[char]
        if opener in stack:
            while stack.pop() != opener:
                pass
    return mode


def find_balanced_json(text: str, start: int = 0) -> tuple[str, int] | None:
    """`start` 이후 처음으로 균형이 맞는 최상위 `{...}` 또는 `[...]`와 끝 오프셋을 돌려줘요."""
    mode = ScanMode.NORMAL
    stack: list[str] = []
    begin = -1
    for index in range(start, len(text)):
        was_open = bool(stack)
        mode = _step(mode, stack, text[index])
        if not was_open and stack:
            begin = index
        elif was_open and not stack:
            return text[begin : index + 1], index + 1
    return None


def is_json_complete(text: str) -> bool:
    mode = ScanMode.NORMAL
    stack: list[str] = []
    has_content = False
    for char in text:
        mode = _step(mode, stack, char)
        if stack:
            has_content = True
    return has_content and not stack and mode is ScanMode.NORMAL


def _missing_closers(text: str) -> str:
    mode = ScanMode.NORMAL
    stack: list[str] = []
    for char in text:
        mode = _step(mode, stack, char)
    return "".join(_OPENERS[opener] for opener in reversed(stack))


def try_parse_json(text: str) -> Any | None:
    """엄격하게 파싱하고, 실패하면 한 번만 보정해서 다시 시도해요."""
    try:
        return json.loads(text, strict=False)
    except ValueError:
        pass

    repaired = text.strip()
    repaired = _TRAILING_COMMA.sub(r"\1", repaired + _missing_closers(repaired))
    try:
        value = json.loads(repaired, strict=False)
    except ValueError:
        return None
    logger.debug("parser_repaired_json", length=len(text))
    return value


def _as_document(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"actions": value}
    return None


def _action_from(raw: Any, index: int) -> ParsedAction | None:
    if not isinstance(raw, dict):
        return None
    action_type = raw.get("type")
    if not isinstance(action_type, str) or not action_type:
        return None
    raw_id = raw.get("id")
    payload = raw.get("payload")
    description = raw.get("description")
    return ParsedAction(
        id=str(raw_id) if raw_id not in (None, "") else _generate_action_id(index),
        type=action_type,
        payload=payload if isinstance(payload, dict) else {},
        description=description if isinstance(description, str) else None,
    )


def extract_actions(document: dict[str, Any]) -> list[ParsedAction]:
    raw_actions = document.get("actions")
    if not isinstance(raw_actions, list):
        return []
    actions: list[ParsedAction] = []
    for index, raw in enumerate(raw_actions):
        action = _action_from(raw, index)
        if action is not None:
            actions.append(action)
    return actions


def extract_message(document: dict[str, Any]) -> str:
    for key in _MESSAGE_KEYS:
        value = document.get(key)
        if isinstance(value, str):
            return value
    return ""


def _advance_scanner(state: ParserState) -> tuple[int, int] | None:
    buffer = state.buffer
    index = state.offset
    while index < len(buffer):
        was_open = bool(state.stack)
        state.mode = _step(state.mode, state.stack, buffer[index])
        index += 1
        if not was_open and state.stack:
            state.start = index - 1
        elif was_open and not state.stack:
            state.offset = index
            start, state.start = state.start, -1
            return start, index
    state.offset = index
    return None


def _depth_at(text: str, position: int) -> tuple[int, ScanMode]:
    mode = ScanMode.NORMAL
    stack: list[str] = []
    for char in text[:position]:
        mode = _step(mode, stack, char)
    return len(stack), mode


def _decode_partial_string(raw: str) -> str | None:
    raw = _INCOMPLETE_UNICODE_ESCAPE.sub("", raw)
    try:
        decoded = json.loads(f'"{raw}"', strict=False)
    except ValueError:
        return None
    if not isinstance(decoded, str):
        return None
    # 하이 서로게이트만 도착한 상태면 다음 조각에서 한 글자로 합쳐지니 잘라둬요.
    if decoded and 0xD800 <= ord(decoded[-1]) <= 0xDBFF:
        decoded = decoded[:-1]
    return decoded


def _partial_message(text: str) -> str | None:
    """아직 닫히지 않은 문서에서 최상위 `"message"` 값의 앞부분을 찾아요."""
    for match in _PARTIAL_MESSAGE.finditer(text):
        depth, mode = _depth_at(text, match.start())
        if depth != 1 or mode is not ScanMode.NORMAL:
            continue
        return _decode_partial_string(match.group(1))
    return None


def _apply_document(state: ParserState, document: dict[str, Any]) -> tuple[list[ParsedAction], str]:
    new_actions: list[ParsedAction] = []
    seen = state.seen_action_ids
    for action in extract_actions(document):
        if action.id in seen:
            continue
        seen.add(action.id)
        state.extracted_actions.append(action)
        new_actions.append(action)

    delta = ""
    message = extract_message(document)
    if message:
        state.strict_message = message
        if message.startswith(state.extracted_message):
            delta = message[len(state.extracted_message) :]
            state.extracted_message = message
    return new_actions, delta


def process_chunk(state: ParserState, chunk: str) -> ChunkResult:
    """조각 하나를 받아 새로 확정된 액션과 새로 드러난 메시지 조각을 돌려줘요."""
    if state.final is not None:
        logger.debug("parser_chunk_after_finalize", length=len(chunk))
        return ChunkResult(new_actions=[], new_message="")

    state.buffer += chunk
    new_actions: list[ParsedAction] = []
    new_message = ""

    while True:
        span = _advance_scanner(state)
        if span is None:
            break
        start, end = span
        document = _as_document(try_parse_json(state.buffer[start:end]))
        if document is None:
            # 닫혔지만 해석할 수 없는 구조는 버퍼에 남겨두고 finalize에서 다시 살펴봐요.
            logger.debug("parser_unparseable_structure", start=start, end=end)
            continue
        actions, delta = _apply_document(state, document)
        new_actions.extend(actions)
        new_message += delta
        state.buffer = state.buffer[end:]
        state.offset -= end

    if not new_message and state.stack:
        partial = _partial_message(state.buffer[state.start :] if state.start >= 0 else state.buffer)
        if partial is not None and len(partial) > len(state.extracted_message):
            if partial.startswith(state.extracted_message):
                new_message = partial[len(state.extracted_message) :]
                state.extracted_message = partial

    return ChunkResult(new_actions=new_actions, new_message=new_message)


def _first_document(text: str) -> dict[str, Any] | None:
    position = 0
    while True:
        candidates = [index for index in (text.find("{", position), text.find("[", position)) if index >= 0]
        if not candidates:
            return None
        start = min(candidates)
        found = find_balanced_json(text, start)
        document = _as_document(try_parse_json(found[0] if found is not None else text[start:]))
        # 액션 객체 하나만 잡힌 경우는 응답 문서로 보지 않고 다음 위치에서 다시 찾아요.
        if document is not None and _looks_like_response(document):
            return document
        position = start + 1


def _looks_like_response(document: dict[str, Any]) -> bool:
    return isinstance(document.get("actions"), list) or any(
        isinstance(document.get(key), str) for key in _MESSAGE_KEYS
    )


def extract_partial_actions(text: str) -> list[ParsedAction]:
    """균형이 깨진 문서에서 액션처럼 생긴 객체만 골라 건져요."""
    actions: list[ParsedAction] = []
    covered_until = 0
    for match in _ACTION_START.finditer(text):
        if match.start() < covered_until:
            continue
        found = find_balanced_json(text, match.start())
        if found is None:
            continue
        action = _action_from(try_parse_json(found[0]), len(actions))
        if action is not None:
            actions.append(action)
            covered_until = found[1]
    return actions


def parse_complete_response(text: str) -> ParsedResponse:
    clean = text.strip()
    fenced = _CODE_FENCE.search(clean)
    if fenced is not None:
        clean = fenced.group(1).strip()

    document = _first_document(clean)
    if document is not None:
        return ParsedResponse(
            message=extract_message(document),
            actions=extract_actions(document),
            source=ResultSource.STRUCTURED,
            raw_text=text,
        )

    actions = extract_partial_actions(clean)
    partial = _partial_message(clean)
    if partial:
        return ParsedResponse(message=partial, actions=actions, source=ResultSource.PARTIAL, raw_text=text)

    prose = _OPEN_CODE_FENCE.sub("", clean)
    brace = prose.find("{")
    if brace >= 0:
        prose = prose[:brace]
    prose = prose.strip()
    if len(prose) < _MIN_PROSE_LENGTH:
        prose = text
    return ParsedResponse(message=prose, actions=actions, source=ResultSource.RAW, raw_text=text)


def finalize_parser(state: ParserState) -> FinalResult:
    """남은 버퍼를 한 번만 정리하고 최종 결과를 돌려줘요. 두 번째 호출부터는 같은 결과를 돌려줘요."""
    if state.final is not None:
        return state.final

    message = state.strict_message or state.extracted_message
    new_actions: list[ParsedAction] = []

    if state.buffer.strip():
        result = parse_complete_response(state.buffer)
        seen = state.seen_action_ids
        for action in result.actions:
            if action.id not in seen:
                seen.add(action.id)
                state.extracted_actions.append(action)
                new_actions.append(action)

        if result.source is ResultSource.STRUCTURED:
            if len(result.message) > len(message):
                message = result.message
        elif result.source is ResultSource.PARTIAL:
            if result.message.startswith(message) and len(result.message) > len(message):
                message = result.message
        elif not message:
            message = result.message
        logger.debug(
            "parser_finalized_buffer",
            source=result.source.value,
            salvaged_actions=len(new_actions),
        )

    state.final = FinalResult(
        message=message,
        actions=list(state.extracted_actions),
        new_actions=new_actions,
        raw_text=state.buffer,
    )
    return state.final
