"""Upload router - POST /upload, including retries of failed uploads."""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile, status
from fastapi.responses import JSONResponse

from photoflow.config import settings
from photoflow.dependencies import get_repository, get_simulator
from photoflow.logging_config import photo_id_ctx
from photoflow.metrics import upload_total
from photoflow.models import PhotoStatus
from photoflow.repository import PhotoRepository
from photoflow.schemas import UploadErrorResponse, UploadResponse
from photoflow.services import idempotency, storage
from photoflow.services.image_check import InvalidImageError, verify_image
from photoflow.simulator import ProcessingSimulator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["upload"])


def _retry_error(
    error: str,
    retry_count: int,
    photo_id: str,
    status_code: int,
    can_retry: bool | None = None,
) -> JSONResponse:
    if can_retry is None:
        can_retry = retry_count < settings.max_retries
    payload = UploadErrorResponse(
        error=error,
        retryCount=retry_count,
        id=photo_id,
        canRetry=can_retry,
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@router.post("/upload", response_model=UploadResponse)
async def upload_photo(
    file: Annotated[UploadFile | None, File(description="Image file to upload")] = None,
    photo_id: Annotated[
        str | None,
        Form(description="Id of a photo whose earlier upload failed"),
    ] = None,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
    repository: PhotoRepository = Depends(get_repository),
    simulator: ProcessingSimulator = Depends(get_simulator),
):
    """Store an image and queue it for processing."""
    if file is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file provided",
        )

    file_bytes = await file.read()

    if len(file_bytes) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_upload_bytes // (1024 * 1024)}MB limit",
        )

    if file.content_type not in settings.accepted_mime_types:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type: {file.content_type}. Accepted: {settings.accepted_mime_types}",
        )

    try:
        verify_image(file_bytes)
    except InvalidImageError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    if idempotency_key:
        existing_id = idempotency.find_uploaded_photo(idempotency_key)
        if existing_id:
            known = await repository.get_photo(existing_id)
            if known is not None:
                logger.info("Idempotent hit: key=%s -> photo=%s", idempotency_key, existing_id)
                return UploadResponse(id=known.id, url=known.url, name=known.name)

    name = file.filename or "upload"
    existing = None
    retry_count = 0
    if photo_id:
        existing = await repository.get_photo(photo_id)
        if existing is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Photo {photo_id} not found",
            )
        if existing.status != PhotoStatus.FAILED:
            # Only a failed upload may be re-sent; anything else already has a pipeline.
            upload_total.labels(result="retry_rejected").inc()
            return _retry_error(
                f"Photo is {existing.status}, only failed uploads can be retried",
                existing.retry_count,
                photo_id,
                status.HTTP_409_CONFLICT,
                can_retry=False,
            )
        retry_count = existing.retry_count
        if retry_count >= settings.max_retries:
            upload_total.labels(result="retry_exhausted").inc()
            return _retry_error(
                "Maximum retry attempts reached",
                retry_count,
                photo_id,
                status.HTTP_409_CONFLICT,
            )
    else:
        photo_id = uuid.uuid4().hex

    token = photo_id_ctx.set(photo_id)
    try:
        try:
            url = storage.store(f"{photo_id}-{name}", file_bytes, file.content_type)
        except storage.StorageError as exc:
            attempts = retry_count + 1
            logger.error("Upload of photo %s failed (attempt %d): %s", photo_id, attempts, exc)
            if existing is None:
                await repository.create_photo(photo_id, name, "")
            await repository.update_photo(
                photo_id,
                status=PhotoStatus.FAILED,
                error=f"Upload failed: {exc}",
                retry_count=attempts,
            )
            upload_total.labels(result="failed").inc()
            return _retry_error(
                "Failed to upload file",
                attempts,
                photo_id,
                status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        if existing is None:
            await repository.create_photo(photo_id, name, url)
        else:
            await repository.update_photo(
                photo_id,
                status=PhotoStatus.QUEUED,
                progress=0,
                error=None,
                url=url,
            )

        if idempotency_key:
            idempotency.remember_upload(idempotency_key, photo_id)

        await simulator.start(photo_id)
        upload_total.labels(result="retried" if existing is not None else "success").inc()
        logger.info("Photo %s uploaded and queued", photo_id)
    finally:
        photo_id_ctx.reset(token)

    return UploadResponse(id=photo_id, url=url, name=name)
