"""Background processing tick for deployments without connected clients."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from photoflow.config import settings
from photoflow.driver import run_tick
from photoflow.repository import PhotoRepository
from photoflow.simulator import ProcessingSimulator
from photoflow.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

_simulator: ProcessingSimulator | None = None


def _get_simulator(repository: PhotoRepository) -> ProcessingSimulator:
    """Worker-wide simulator so jobs survive between ticks."""
    global _simulator
    if _simulator is None:
        _simulator = ProcessingSimulator(repository)
    else:
        _simulator.repository = repository
    return _simulator


async def _tick() -> int:
    # Every task runs its own event loop, so the engine cannot be pooled across runs.
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        repository = PhotoRepository(async_sessionmaker(engine, expire_on_commit=False))
        return await run_tick(_get_simulator(repository), repository, mode="background")
    finally:
        await engine.dispose()


@celery_app.task(name="photoflow.tasks.ticker.advance_pending_photos", bind=True)
def advance_pending_photos(self) -> dict:  # noqa: ARG001
    """Start or advance every queued/processing photo once."""
    visited = asyncio.run(_tick())
    logger.info("Background tick visited %d photos", visited)
    return {"visited": visited}
