from __future__ import annotations

import asyncio
import contextlib
import uuid

from arture_service.app.providers.chain import ProviderChain
from arture_service.app.store import InMemorySessionStore
from arture_service.modules.generation.contracts import GenerationTask
from arture_service.modules.generation.engine import GenerationEngine
from libs.common.errors import DomainError
from libs.common.logging import get_logger
from libs.contracts.models import StreamRequest

logger = get_logger("arture_service.generation_worker")


class GenerationUnavailableError(DomainError):
    http_status = 503

    def __init__(self, message: str = "지금은 응답 생성 요청을 받을 수 없어요.") -> None:
        super().__init__("GENERATION_UNAVAILABLE", message, retryable=True)


class GenerationWorkerPool:
    def __init__(
        self,
        *,
        store: InMemorySessionStore,
        providers: ProviderChain,
        worker_count: int,
        timeout_seconds: float,
        history_window: int = 6,
        element_limit: int = 8,
        queue_size: int = 1000,
        drain_timeout_seconds: float = 30.0,
    ) -> None:
        self._worker_count = worker_count
        self._drain_timeout = drain_timeout_seconds
        self._queue: asyncio.Queue[GenerationTask] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task[None]] = []
        self._closing = False
        self._engine = GenerationEngine(
            store=store,
            providers=providers,
            timeout_seconds=timeout_seconds,
            history_window=history_window,
            element_limit=element_limit,
        )

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._closing

    async def start(self) -> None:
        if self._tasks:
            return
        self._closing = False
        for idx in range(self._worker_count):
            self._tasks.append(asyncio.create_task(self._worker_loop(idx)))

    async def stop(self) -> None:
        """대기 중인 작업이 모두 처리될 때까지 기다린 후 워커를 종료해요."""
        self._closing = True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except TimeoutError:
            logger.warning("generation_worker_graceful_shutdown_timeout", pending=self._queue.qsize())
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def enqueue(
        self,
        *,
        task_id: str,
        session_id: str,
        owner_id: str,
        request: StreamRequest,
        trace_id: str | None = None,
    ) -> GenerationTask:
        task = GenerationTask(
            task_id=task_id,
            trace_id=trace_id or str(uuid.uuid4()),
            session_id=session_id,
            owner_id=owner_id,
            request=request,
        )
        if self._closing or not self._tasks:
            raise GenerationUnavailableError("생성 워커가 실행 중이 아니에요.")
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull as exc:
            logger.warning("generation_queue_full", session_id=session_id, pending=self._queue.qsize())
            raise GenerationUnavailableError("대기 중인 생성 요청이 너무 많아요.") from exc
        logger.info("generation_enqueued", session_id=session_id, task_id=task_id, pending=self._queue.qsize())
        return task

    async def _worker_loop(self, worker_index: int) -> None:
        while not (self._closing and self._queue.empty()):
            task = await self._queue.get()
            try:
                await self._engine.process(task)
            except DomainError as exc:
                log_level = logger.warning if exc.retryable else logger.error
                log_level(
                    "generation_domain_error",
                    worker_index=worker_index,
                    trace_id=task.trace_id,
                    session_id=task.session_id,
                    error_code=exc.error_code,
                    retryable=exc.retryable,
                    error=str(exc),
                )
                await self._engine.fail(task, exc)
            except Exception as exc:
                logger.exception(
                    "generation_unexpected_error",
                    worker_index=worker_index,
                    trace_id=task.trace_id,
                    session_id=task.session_id,
                    error=str(exc),
                )
                await self._engine.fail(task)
            finally:
                await self._engine.release(task)
                self._queue.task_done()
