from __future__ import annotations

from arture_service.modules.common.deps import (
    get_chat_service,
    get_provider_chain,
    get_settings,
    get_store,
    get_streaming_service,
    get_worker_pool,
    require_auth,
    resolve_principal,
)

__all__ = [
    "get_chat_service",
    "get_provider_chain",
    "get_settings",
    "get_store",
    "get_streaming_service",
    "get_worker_pool",
    "require_auth",
    "resolve_principal",
]
