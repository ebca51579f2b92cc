"""
FastAPI application factory.

The lifespan owns the process-wide resources the routes share: the queue
schema and the sink records are delivered to.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lienflow.core.config import VERSION, get_settings
from lienflow.database.connection import close_db, init_db
from lienflow.models.jobs import HealthResponse
from lienflow.services.sinks import build_sink
from lienflow.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    configure_logging()

    await init_db()
    # tests and embedders may install their own sink before startup
    if not hasattr(app.state, "sink"):
        app.state.sink = build_sink(settings)
    logger.info("api_started", app_name=settings.app_name, sink=app.state.sink.name)

    try:
        yield
    finally:
        await app.state.sink.close()
        await close_db()
        logger.info("api_stopped")


def create_app() -> FastAPI:
    """Build the API: scrape trigger, queue inspection and /health."""
    settings = get_settings()
    docs = settings.debug

    app = FastAPI(
        title=settings.app_name,
        description="Lien filing discovery and extraction queue",
        version=VERSION,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    from api.routes.queue import router as queue_router
    from api.routes.scrape import router as scrape_router

    for router in (scrape_router, queue_router):
        app.include_router(router, prefix="/api/v1")

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(status="healthy", version=VERSION, database="connected")

    return app
