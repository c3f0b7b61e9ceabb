from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from tourvault.api.routes.backups import router as backups_router
from tourvault.api.routes.blobs import router as blobs_router
from tourvault.api.routes.health import router as health_router
from tourvault.api.routes.migrations import router as migrations_router
from tourvault.core.config import get_settings
from tourvault.core.logging import configure_logging
from tourvault.db.init_db import initialize_database
from tourvault.worker.pipeline import shutdown_continuations


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    yield
    shutdown_continuations(wait=False)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(backups_router, prefix="/api/v1")
    app.include_router(blobs_router, prefix="/api/v1")
    app.include_router(migrations_router, prefix="/api/v1")
    return app
