from __future__ import annotations

from fastapi import FastAPI

from arture_service.app.settings import Settings, settings
from arture_service.bootstrap import create_lifespan
from arture_service.modules import build_api_router
from libs.common.http_handlers import register_exception_handlers
from libs.common.logging import configure_logging


def create_app(app_settings: Settings | None = None) -> FastAPI:
    resolved = app_settings or settings
    configure_logging(resolved.log_level)
    application = FastAPI(title=resolved.service_name, lifespan=create_lifespan(resolved))
    application.include_router(build_api_router())
    register_exception_handlers(application, "arture_service.errors")
    return application


app = create_app()
