"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photoflow.config import settings
from photoflow.database import async_session, engine
from photoflow.logging_config import setup_logging
from photoflow.middleware import register_middleware
from photoflow.models import Base
from photoflow.observability import setup_api_observability
from photoflow.repository import PhotoRepository
from photoflow.simulator import ProcessingSimulator

# Initialize structured logging globally
setup_logging(settings.otel_service_name_api)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Startup / shutdown lifecycle hook."""
    # For sqlite local development, auto-create tables.
    # For Postgres deployments, rely on Alembic migrations.
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (sqlite auto-create)")
    else:
        logger.info("Skipping metadata.create_all for non-sqlite database")
    yield
    await engine.dispose()
    logger.info("Database engine disposed")


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Build and return the FastAPI application instance."""
    application = FastAPI(
        title="PhotoFlow",
        description="Photo upload service with simulated processing and live status",
        version="0.1.0",
        lifespan=lifespan,
    )

    # One simulator per process; its job map is not shared with other workers.
    repository = PhotoRepository(session_factory or async_session)
    application.state.repository = repository
    application.state.simulator = ProcessingSimulator(repository)

    # --- Middleware ---
    register_middleware(application)

    # --- Register routers ---
    from photoflow.routers.health import router as health_router
    from photoflow.routers.photos import router as photos_router
    from photoflow.routers.processing import router as processing_router
    from photoflow.routers.upload import router as upload_router

    application.include_router(upload_router, prefix="/api")
    application.include_router(photos_router, prefix="/api")
    application.include_router(processing_router, prefix="/api")
    application.include_router(health_router, prefix="/api")

    # --- Observability ---
    setup_api_observability(application, engine)

    @application.get("/", include_in_schema=False)
    async def root():
        return {"message": "PhotoFlow API", "docs": "/docs"}

    return application


app = create_app()
