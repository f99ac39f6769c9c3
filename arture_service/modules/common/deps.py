from __future__ import annotations

from fastapi import HTTPException, Request, status

from arture_service.app.providers.chain import ProviderChain
from arture_service.app.settings import Settings, settings
from arture_service.app.store import InMemorySessionStore
from arture_service.modules.chat.service import ChatService
from arture_service.modules.generation.worker import GenerationWorkerPool
from arture_service.modules.streaming.service import StreamingService


def get_settings(request: Request) -> Settings:
    configured = getattr(request.app.state, "settings", None)
    if isinstance(configured, Settings):
        return configured
    return settings


def require_auth(request: Request, authorization: str) -> None:
    if authorization != f"Bearer {get_settings(request).api_token}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="인증에 실패했어요.")


def resolve_principal(user_id: str) -> str:
    principal = user_id.strip()
    if not principal:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-user-id 헤더가 필요해요.")
    return principal


def get_store(request: Request) -> InMemorySessionStore:
    return request.app.state.store  # type: ignore[no-any-return]


def get_provider_chain(request: Request) -> ProviderChain:
    return request.app.state.provider_chain  # type: ignore[no-any-return]


def get_worker_pool(request: Request) -> GenerationWorkerPool:
    worker_pool = getattr(request.app.state, "generation_worker_pool", None)
    if not isinstance(worker_pool, GenerationWorkerPool) or not worker_pool.running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="생성 워커를 사용할 수 없어요.")
    return worker_pool


def get_streaming_service(request: Request) -> StreamingService:
    app_settings = get_settings(request)
    return StreamingService(
        store=get_store(request),
        worker_pool=get_worker_pool(request),
        heartbeat_interval_seconds=app_settings.heartbeat_interval_ms / 1000,
        max_stream_seconds=app_settings.session_timeout_ms / 1000 + app_settings.heartbeat_interval_ms / 1000,
    )


def get_chat_service(request: Request) -> ChatService:
    app_settings = get_settings(request)
    return ChatService(
        providers=get_provider_chain(request),
        history_window=app_settings.history_window,
        element_limit=app_settings.context_element_limit,
    )
