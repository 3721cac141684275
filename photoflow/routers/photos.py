"""Photos and gallery routers - listing, lookup and deletion."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from photoflow.dependencies import get_repository, get_simulator
from photoflow.repository import PhotoRepository
from photoflow.schemas import DeletePhotosRequest, PhotoOut, SuccessResponse
from photoflow.simulator import ProcessingSimulator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["photos"])


async def _delete(
    ids: list[str],
    repository: PhotoRepository,
    simulator: ProcessingSimulator,
) -> SuccessResponse:
    await repository.delete_photos(ids)
    for photo_id in ids:
        simulator.discard(photo_id)
    return SuccessResponse()


@router.get("/photos", response_model=list[PhotoOut])
async def list_photos(repository: PhotoRepository = Depends(get_repository)):
    """All photos, newest upload first."""
    return await repository.get_all_photos()


@router.get("/photos/failed", response_model=list[PhotoOut])
async def list_failed_photos(repository: PhotoRepository = Depends(get_repository)):
    """Failed photos that can still be re-uploaded."""
    return await repository.get_failed_photos()


@router.get("/photos/{photo_id}", response_model=PhotoOut)
async def get_photo(photo_id: str, repository: PhotoRepository = Depends(get_repository)):
    photo = await repository.get_photo(photo_id)
    if photo is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Photo {photo_id} not found",
        )
    return photo


@router.delete("/photos/{photo_id}", response_model=SuccessResponse)
async def delete_photo(
    photo_id: str,
    repository: PhotoRepository = Depends(get_repository),
    simulator: ProcessingSimulator = Depends(get_simulator),
):
    return await _delete([photo_id], repository, simulator)


@router.get("/gallery", response_model=list[PhotoOut])
async def gallery(repository: PhotoRepository = Depends(get_repository)):
    """Finished photos, most recently processed first."""
    return await repository.get_done_photos()


@router.delete("/gallery", response_model=SuccessResponse)
async def delete_gallery_photos(
    body: DeletePhotosRequest,
    repository: PhotoRepository = Depends(get_repository),
    simulator: ProcessingSimulator = Depends(get_simulator),
):
    logger.info("Deleting %d gallery photos", len(body.ids))
    return await _delete(body.ids, repository, simulator)
