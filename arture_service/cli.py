from __future__ import annotations

import os

import uvicorn


def _run(*, reload_enabled: bool) -> None:
    host = os.getenv("ARTURE_HOST", "0.0.0.0")
    port = int(os.getenv("ARTURE_PORT", "8090"))
    uvicorn.run(
        "arture_service.app.main:app",
        host=host,
        port=port,
        reload=reload_enabled,
    )


def main() -> None:
    _run(reload_enabled=False)


def main_dev() -> None:
    _run(reload_enabled=True)
