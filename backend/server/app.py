"""
Builds the FastAPI application that hosts one CaptureService.

The service is started and stopped by the app lifespan and exposed to
route handlers as app.state.service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from config import AppConfig
from observability import logger
from service.capture_service import CaptureService
from service.source_client import SourceFactory, load_source_factory

from server.routes import register_routes


def create_app(
    config: AppConfig | None = None,
    source_factory: SourceFactory | None = None,
) -> FastAPI:
    """
    Build the app. Tests pass an explicit config and a fake source
    factory; production reads both from the environment.

    StartupError (source factory cannot be loaded, storage cannot be
    opened) propagates out of the lifespan and aborts startup.
    """
    config = config or AppConfig.load_from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.configure(config.log_level)
        factory = source_factory or load_source_factory(config.source_client_factory)

        service = CaptureService(config=config, source_factory=factory)
        app.state.service = service
        await service.start()
        try:
            yield
        finally:
            await service.shutdown(reason="lifespan_shutdown")

    app = FastAPI(title="Continuity Capture Service", lifespan=lifespan)
    app.state.config = config

    # Routes
    register_routes(app)

    return app
