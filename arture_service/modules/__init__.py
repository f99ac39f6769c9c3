from __future__ import annotations

from fastapi import APIRouter


def build_api_router() -> APIRouter:
    from arture_service.modules.chat.api import router as chat_router
    from arture_service.modules.health.api import router as health_router
    from arture_service.modules.streaming.api import router as streaming_router

    api_router = APIRouter(prefix="/v1")
    api_router.include_router(streaming_router)
    api_router.include_router(chat_router)
    api_router.include_router(health_router)
    return api_router


__all__ = ["build_api_router"]
