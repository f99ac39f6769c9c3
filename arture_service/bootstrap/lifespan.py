from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from arture_service.app.settings import Settings
from arture_service.app.store import InMemorySessionStore
from arture_service.bootstrap.container import build_runtime_components
from libs.common.logging import get_logger

logger = get_logger("arture_service.lifespan")


async def run_eviction_sweeper(store: InMemorySessionStore, *, max_age_ms: int, interval_seconds: float) -> None:
    """오래 활동이 없는 세션을 주기적으로 정리해요."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.evict_stale(max_age_ms)
        except Exception as exc:
            logger.exception("session_eviction_failed", error=str(exc))


def create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = await build_runtime_components(settings)
        await runtime.worker_pool.start()
        sweeper = asyncio.create_task(
            run_eviction_sweeper(
                runtime.store,
                max_age_ms=settings.session_max_age_ms,
                interval_seconds=settings.eviction_interval_seconds,
            )
        )

        app.state.store = runtime.store
        app.state.provider_chain = runtime.provider_chain
        app.state.generation_worker_pool = runtime.worker_pool
        app.state.settings = settings

        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await runtime.worker_pool.stop()

    return lifespan
