"""FastAPI application factory.

Owns the lifecycle of the connection pool: the ``Database`` is created
before the first request is served and disposed on shutdown.  This module
is the authoritative app object; app/main.py re-exports it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.errors import register_exception_handlers
from app.api.routes.health import router as health_router
from app.api.routes.identify import router as identify_router
from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.db.session import Database
from app.identity.service import IdentityService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    settings = get_settings()

    database = Database.from_settings(settings)
    if settings.database_auto_create:
        database.create_schema()
    app.state.database = database
    app.state.identity_service = IdentityService.from_settings(database, settings)
    logger.info("%s %s started (env=%s)", settings.app_name, settings.app_version, settings.app_env)
    try:
        yield
    finally:
        database.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    register_exception_handlers(application)
    application.include_router(health_router)
    application.include_router(identify_router)
    return application


app = create_app()
