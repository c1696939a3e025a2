"""Entrypoint for the FastAPI application."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env locally only (deployments inject env vars)
env_path = os.path.join(os.path.dirname(__file__), "../.env")
if os.path.exists(env_path):
    load_dotenv(dotenv_path=os.path.abspath(env_path))

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tasks.worker import celery

from .api import health, jobs, schemas
from .core.config import get_settings
from .core.container import Services, build_services
from .core.logging import configure_logging

LOGGER = structlog.get_logger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app; tests pass a prebuilt :class:`Services` graph."""

    settings = services.settings if services is not None else get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        if owned:
            app.state.services = build_services(settings, celery)
        LOGGER.info("api_started", redis_enabled=settings.redis_enabled)
        try:
            yield
        finally:
            if owned:
                app.state.services.close()
            LOGGER.info("api_stopped")

    app = FastAPI(title="Docflow", version="0.1.0", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")
    app.include_router(jobs.ws_router, prefix="/api")
    app.include_router(schemas.router, prefix="/api")

    return app


app = create_app()
