from __future__ import annotations

from arture_service.bootstrap.container import RuntimeComponents, build_runtime_components
from arture_service.bootstrap.lifespan import create_lifespan

__all__ = [
    "RuntimeComponents",
    "build_runtime_components",
    "create_lifespan",
]
