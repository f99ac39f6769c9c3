from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from arture_service.modules.generation.worker import GenerationWorkerPool

router = APIRouter()


@router.get("/health/live")
async def health_live() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready")
async def health_ready(request: Request) -> JSONResponse:
    """생성 워커가 돌고 있어야 준비 완료예요. 프로바이더가 없어도 REST 안내 응답은 줄 수 있어서 막지 않아요."""
    worker_pool = getattr(request.app.state, "generation_worker_pool", None)
    provider_chain = getattr(request.app.state, "provider_chain", None)
    store = getattr(request.app.state, "store", None)

    workers_running = isinstance(worker_pool, GenerationWorkerPool) and worker_pool.running
    body: dict[str, Any] = {
        "status": "ok" if workers_running else "unavailable",
        "workersRunning": workers_running,
        "providersConfigured": bool(provider_chain is not None and provider_chain.is_configured),
        "activeSessions": len(store.list_ids()) if store is not None else 0,
    }
    code = status.HTTP_200_OK if workers_running else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)
