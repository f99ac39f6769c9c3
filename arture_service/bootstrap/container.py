from __future__ import annotations

from dataclasses import dataclass

from arture_service.app.providers.catalog import build_provider_adapters
from arture_service.app.providers.chain import ProviderChain
from arture_service.app.settings import Settings
from arture_service.app.store import InMemorySessionStore, StoreConfig
from arture_service.modules.generation.worker import GenerationWorkerPool
from libs.common.logging import get_logger

logger = get_logger("arture_service.bootstrap")


@dataclass(slots=True)
class RuntimeComponents:
    store: InMemorySessionStore
    provider_chain: ProviderChain
    worker_pool: GenerationWorkerPool


async def build_runtime_components(settings: Settings) -> RuntimeComponents:
    store = InMemorySessionStore(
        StoreConfig(
            timeout_ms=settings.session_timeout_ms,
            heartbeat_interval_ms=settings.heartbeat_interval_ms,
            max_retries=settings.max_retries,
            buffer_size=settings.buffer_size,
        )
    )
    provider_chain = ProviderChain(
        build_provider_adapters(settings),
        cooldown_seconds=settings.provider_cooldown_seconds,
    )
    if not provider_chain.is_configured:
        logger.warning("no_provider_configured", enabled=settings.enabled_provider_names)

    worker_pool = GenerationWorkerPool(
        store=store,
        providers=provider_chain,
        worker_count=settings.generation_worker_count,
        timeout_seconds=settings.session_timeout_ms / 1000,
        history_window=settings.history_window,
        element_limit=settings.context_element_limit,
        queue_size=settings.generation_queue_size,
    )

    return RuntimeComponents(
        store=store,
        provider_chain=provider_chain,
        worker_pool=worker_pool,
    )
