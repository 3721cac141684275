"""Pydantic request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from photoflow.models import PhotoStatus


class LogEntry(BaseModel):
    """One line of a photo's processing log."""

    timestamp: str
    message: str


class PhotoOut(BaseModel):
    """Photo as returned by the API and pushed over the event stream."""

    id: str
    name: str
    url: str
    status: PhotoStatus
    progress: int
    uploaded_at: datetime
    processed_at: datetime | None = None
    error: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    retry_count: int = 0

    model_config = {"from_attributes": True}


class UploadResponse(BaseModel):
    id: str
    url: str
    name: str


class UploadErrorResponse(BaseModel):
    """Returned when storing an upload fails; the client may retry with ``id``."""

    error: str
    retryCount: int
    id: str
    canRetry: bool


class UpdateEvent(BaseModel):
    """Snapshot pushed to clients after every tick."""

    type: Literal["update"] = "update"
    photos: list[PhotoOut]


class DeletePhotosRequest(BaseModel):
    ids: list[str]


class SuccessResponse(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str
    dependencies: dict[str, str]
