"""Processing router - POST /process (one tick) and GET /events (SSE)."""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from photoflow.dependencies import get_repository, get_simulator
from photoflow.driver import UpdateStream, run_tick
from photoflow.repository import PhotoRepository
from photoflow.simulator import ProcessingSimulator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["processing"])


@router.post("/process")
async def process_pending(
    repository: PhotoRepository = Depends(get_repository),
    simulator: ProcessingSimulator = Depends(get_simulator),
):
    """Run a single tick over every queued or processing photo."""
    try:
        visited = await run_tick(simulator, repository, mode="pull")
    except Exception:
        logger.exception("Processing tick failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to process photos"},
        )
    logger.info("Processing tick visited %d photos", visited)
    return {"success": True}


@router.get("/events")
async def stream_events(
    request: Request,
    repository: PhotoRepository = Depends(get_repository),
    simulator: ProcessingSimulator = Depends(get_simulator),
):
    """Push a processing snapshot now and after every tick until the client leaves."""
    stream = UpdateStream(simulator, repository, is_disconnected=request.is_disconnected)
    return StreamingResponse(
        stream.events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
