from __future__ import annotations

import asyncio

import pytest
from arture_service.app.providers.chain import ProviderChain, ProvidersExhaustedError
from arture_service.app.store import InMemorySessionStore, SessionState
from arture_service.modules.generation.contracts import GenerationTask
from arture_service.modules.generation.engine import GenerationEngine
from arture_service.modules.generation.worker import GenerationUnavailableError, GenerationWorkerPool

from libs.common.errors import StreamTimeoutError, UpstreamTransientError
from libs.contracts.models import EventType, StreamRequest, reconstruct
from tests.conftest import ScriptedProvider, create_test_session

CHUNKS = ['{"message":"Hel', 'lo world","actions":[{"ty', 'pe":"add_text","payload":{}}]}']


class _StallingProvider(ScriptedProvider):
    async def stream(self, request):  # type: ignore[no-untyped-def, override]
        self.requests.append(request)
        yield "{"
        await asyncio.sleep(10)


def _task(session_id: str, task_id: str = "gen_1") -> GenerationTask:
    return GenerationTask(
        task_id=task_id,
        trace_id="trace-1",
        session_id=session_id,
        owner_id="u1",
        request=StreamRequest(session_id=session_id, message="인사해줘"),
    )


def _engine(store: InMemorySessionStore, *providers: ScriptedProvider, timeout: float = 5.0) -> GenerationEngine:
    return GenerationEngine(store=store, providers=ProviderChain(list(providers)), timeout_seconds=timeout)


@pytest.mark.asyncio
async def test_engine_records_events_in_protocol_order(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    engine = _engine(session_store, ScriptedProvider(CHUNKS))

    await engine.process(_task(session.id))

    snapshot = session_store.require(session.id)
    types = [event.type for event in snapshot.events]
    assert types[0] is EventType.SESSION_START
    assert types[-1] is EventType.COMPLETE
    assert types.count(EventType.CHUNK) == 3
    assert types.count(EventType.ACTION) == 1
    assert [event.sequence for event in snapshot.events] == list(range(len(types)))

    final_message = [e for e in snapshot.events if e.type is EventType.MESSAGE][-1]
    assert final_message.data == {"content": "Hello world", "isPartial": False, "role": "assistant"}
    assert snapshot.events[-1].data == {"success": True, "model": "scripted:test-model", "actionsCount": 1}

    assert snapshot.state is SessionState.COMPLETED
    assert snapshot.metadata.model == "scripted:test-model"
    assert snapshot.current_message == "Hello world"
    message, actions = reconstruct(event.to_contract() for event in snapshot.events)
    assert message == "Hello world"
    assert [action.type for action in actions] == ["add_text"]


@pytest.mark.asyncio
async def test_engine_fail_records_error_event(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    engine = _engine(session_store, ScriptedProvider([], error=UpstreamTransientError("끊겼어요")))
    task = _task(session.id)

    with pytest.raises(ProvidersExhaustedError) as exc_info:
        await engine.process(task)
    await engine.fail(task, exc_info.value)

    snapshot = session_store.require(session.id)
    assert snapshot.state is SessionState.ERROR
    last = snapshot.events[-1]
    assert last.type is EventType.ERROR
    assert last.data["code"] == "PROVIDERS_FAILED"
    assert snapshot.error == last.data["message"]


@pytest.mark.asyncio
async def test_engine_timeout_marks_session_timeout(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    engine = _engine(session_store, _StallingProvider([]), timeout=0.05)
    task = _task(session.id)

    with pytest.raises(StreamTimeoutError) as exc_info:
        await engine.process(task)
    await engine.fail(task, exc_info.value)

    snapshot = session_store.require(session.id)
    assert snapshot.state is SessionState.TIMEOUT
    assert snapshot.events[-1].data["code"] == "TIMEOUT"


@pytest.mark.asyncio
async def test_worker_pool_processes_task_and_releases_writer(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    await session_store.claim_writer(session.id, "gen_1")
    pool = GenerationWorkerPool(
        store=session_store,
        providers=ProviderChain([ScriptedProvider(CHUNKS)]),
        worker_count=1,
        timeout_seconds=5.0,
    )

    await pool.start()
    assert pool.running
    await pool.enqueue(
        task_id="gen_1",
        session_id=session.id,
        owner_id="u1",
        request=StreamRequest(session_id=session.id, message="hi"),
    )
    await pool.stop()

    snapshot = session_store.require(session.id)
    assert snapshot.state is SessionState.COMPLETED
    assert snapshot.writer is None
    assert not pool.running


@pytest.mark.asyncio
async def test_worker_pool_turns_exhausted_providers_into_error_event(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    pool = GenerationWorkerPool(
        store=session_store,
        providers=ProviderChain([ScriptedProvider([], configured=False)]),
        worker_count=1,
        timeout_seconds=5.0,
    )

    await pool.start()
    await pool.enqueue(
        task_id="gen_1",
        session_id=session.id,
        owner_id="u1",
        request=StreamRequest(session_id=session.id, message="hi"),
    )
    await pool.stop()

    snapshot = session_store.require(session.id)
    assert snapshot.state is SessionState.ERROR
    assert [event.type for event in snapshot.events] == [EventType.SESSION_START, EventType.ERROR]
    assert snapshot.events[-1].data["code"] == "PROVIDERS_FAILED"


@pytest.mark.asyncio
async def test_worker_pool_rejects_work_when_not_running(session_store: InMemorySessionStore) -> None:
    session = await create_test_session(session_store)
    pool = GenerationWorkerPool(
        store=session_store,
        providers=ProviderChain([ScriptedProvider(CHUNKS)]),
        worker_count=1,
        timeout_seconds=5.0,
    )

    with pytest.raises(GenerationUnavailableError) as exc_info:
        await pool.enqueue(
            task_id="gen_1",
            session_id=session.id,
            owner_id="u1",
            request=StreamRequest(session_id=session.id, message="hi"),
        )
    assert exc_info.value.http_status == 503
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_worker_pool_rejects_work_when_queue_is_full(session_store: InMemorySessionStore) -> None:
    first = await create_test_session(session_store)
    second = await create_test_session(session_store)
    pool = GenerationWorkerPool(
        store=session_store,
        providers=ProviderChain([_StallingProvider([])]),
        worker_count=1,
        timeout_seconds=0.2,
        queue_size=1,
        drain_timeout_seconds=2.0,
    )

    await pool.start()
    await pool.enqueue(
        task_id="gen_1",
        session_id=first.id,
        owner_id="u1",
        request=StreamRequest(session_id=first.id, message="hi"),
    )
    with pytest.raises(GenerationUnavailableError):
        await pool.enqueue(
            task_id="gen_2",
            session_id=second.id,
            owner_id="u1",
            request=StreamRequest(session_id=second.id, message="hi"),
        )
    await pool.stop()

    assert session_store.require(first.id).state is SessionState.TIMEOUT
