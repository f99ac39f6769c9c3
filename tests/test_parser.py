from __future__ import annotations

import json

import pytest
from arture_service.app.parser import (
    ChunkResult,
    ResultSource,
    create_parser_state,
    extract_partial_actions,
    finalize_parser,
    find_balanced_json,
    is_json_complete,
    parse_complete_response,
    process_chunk,
    try_parse_json,
)

SCENARIO_CHUNKS = [
    '{"message":"Hel',
    'lo world","actions":[{"ty',
    'pe":"add_text","payload":{}}]}',
]

DOCUMENT = json.dumps(
    {
        "message": 'Hello, "quoted" {world} [x] \\ done',
        "actions": [
            {"id": "a1", "type": "add_text", "payload": {"text": "hi {there}"}},
            {"id": "a2", "type": "move_element", "payload": {"dx": 1, "dy": [1, 2]}},
        ],
    },
    ensure_ascii=False,
)


def _feed(chunks: list[str]) -> tuple[str, list[ChunkResult], object]:
    state = create_parser_state()
    results = [process_chunk(state, chunk) for chunk in chunks]
    final = finalize_parser(state)
    streamed = "".join(result.new_message for result in results)
    return streamed, results, final


def _summary(final: object) -> tuple[str, list[tuple[str, str, dict[str, object]]]]:
    return final.message, [(a.id, a.type, a.payload) for a in final.actions]  # type: ignore[attr-defined]


def test_scenario_chunks_build_message_and_single_action() -> None:
    streamed, results, final = _feed(SCENARIO_CHUNKS)

    assert streamed == "Hello world"
    assert results[0].new_message == "Hel"
    assert final.message == "Hello world"  # type: ignore[attr-defined]
    assert len(final.actions) == 1  # type: ignore[attr-defined]
    action = final.actions[0]  # type: ignore[attr-defined]
    assert action.type == "add_text"
    assert action.payload == {}
    assert action.id.startswith("act_")
    assert results[2].new_actions == [action]


def test_char_by_char_matches_single_call() -> None:
    _, _, whole = _feed([DOCUMENT])
    streamed, _, char_by_char = _feed(list(DOCUMENT))

    assert _summary(char_by_char) == _summary(whole)
    assert streamed == whole.message  # type: ignore[attr-defined]


@pytest.mark.parametrize("split_at", range(1, len(DOCUMENT), 7))
def test_any_two_way_split_matches_single_call(split_at: int) -> None:
    _, _, whole = _feed([DOCUMENT])
    _, _, split = _feed([DOCUMENT[:split_at], DOCUMENT[split_at:]])
    assert _summary(split) == _summary(whole)


def test_message_delta_never_rewrites_shown_prefix() -> None:
    state = create_parser_state()
    shown = ""
    for chunk in list(DOCUMENT):
        shown += process_chunk(state, chunk).new_message
        assert json.loads(DOCUMENT)["message"].startswith(shown)


def test_malformed_fragment_recovers_after_wellformed_completion() -> None:
    state = create_parser_state()

    first = process_chunk(state, '{"message": "hello, "actions": [}')
    second = process_chunk(state, '{"message": "hello world", "actions": []}')
    final = finalize_parser(state)

    assert first.new_message == "hello, "
    assert second.new_actions == []
    assert final.message == "hello world"


def test_finalize_is_idempotent() -> None:
    state = create_parser_state()
    process_chunk(state, DOCUMENT)

    first = finalize_parser(state)
    second = finalize_parser(state)

    assert second.message == first.message
    assert [a.id for a in second.actions] == [a.id for a in first.actions]
    assert len(second.actions) == 2


def test_chunks_after_finalize_are_ignored() -> None:
    state = create_parser_state()
    process_chunk(state, SCENARIO_CHUNKS[0])
    finalize_parser(state)

    result = process_chunk(state, SCENARIO_CHUNKS[1])
    assert result.new_message == ""
    assert result.new_actions == []


def test_duplicate_action_ids_are_emitted_once() -> None:
    state = create_parser_state()
    first = process_chunk(state, '{"actions":[{"id":"x","type":"add_text"}]}')
    second = process_chunk(state, '{"actions":[{"id":"x","type":"add_text"},{"id":"y","type":"delete_element"}]}')

    assert [a.id for a in first.new_actions] == ["x"]
    assert [a.id for a in second.new_actions] == ["y"]


def test_actions_without_type_are_skipped() -> None:
    state = create_parser_state()
    result = process_chunk(state, '{"message":"ok","actions":[{"payload":{}},{"type":"add_text"}]}')
    assert [a.type for a in result.new_actions] == ["add_text"]


def test_alternative_message_keys_follow_priority() -> None:
    state = create_parser_state()
    result = process_chunk(state, '{"response":"from response","content":"from content"}')
    assert result.new_message == "from response"


def test_finalize_salvages_unbalanced_document() -> None:
    state = create_parser_state()
    process_chunk(
        state,
        '{"message": "partial answer", "actions": [{"type": "add_text", "payload": {"text": "a"}}, {"type": "spawn_',
    )
    final = finalize_parser(state)

    assert final.message == "partial answer"
    assert [a.type for a in final.actions] == ["add_text"]
    assert final.new_actions == final.actions


def test_finalize_falls_back_to_raw_text() -> None:
    state = create_parser_state()
    process_chunk(state, "그냥 평범한 문장이에요.")
    final = finalize_parser(state)
    assert final.message == "그냥 평범한 문장이에요."
    assert final.actions == []


def test_parse_complete_response_strips_code_fence() -> None:
    parsed = parse_complete_response('```json\n{"message":"ok","actions":[{"type":"add_text"}]}\n```')
    assert parsed.source is ResultSource.STRUCTURED
    assert parsed.message == "ok"
    assert [a.type for a in parsed.actions] == ["add_text"]


def test_parse_complete_response_keeps_prose_before_json() -> None:
    parsed = parse_complete_response('Here you go: {"broken": ')
    assert parsed.source is ResultSource.RAW
    assert parsed.message == "Here you go:"


def test_extract_partial_actions_recovers_closed_objects() -> None:
    actions = extract_partial_actions('[{"type":"add_text","payload":{"t":"{"}},{"id":"b","type":"move_element"},{"type":"cut')
    assert [a.type for a in actions] == ["add_text", "move_element"]
    assert actions[0].payload == {"t": "{"}
    assert actions[1].id == "b"


def test_balancer_ignores_braces_inside_strings() -> None:
    text = 'prefix {"a": "}{", "b": [1, "]"]} suffix'
    found = find_balanced_json(text)
    assert found is not None
    body, end = found
    assert json.loads(body) == {"a": "}{", "b": [1, "]"]}
    assert text[end:] == " suffix"


def test_is_json_complete() -> None:
    assert is_json_complete('{"a": "{"}')
    assert not is_json_complete('{"a": [1, 2')
    assert not is_json_complete("no json here")


def test_try_parse_json_repairs_trailing_comma_and_missing_closers() -> None:
    assert try_parse_json('{"a": [1, 2,], }') == {"a": [1, 2]}
    assert try_parse_json('{"a": {"b": 1') == {"a": {"b": 1}}
    assert try_parse_json("{not json") is None


def test_partial_message_handles_split_escape() -> None:
    state = create_parser_state()
    first = process_chunk(state, '{"message":"line\\')
    second = process_chunk(state, 'nnext","actions":[')
    assert first.new_message == "line"
    assert second.new_message == "\nnext"
