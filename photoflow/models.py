"""SQLAlchemy ORM models."""

import enum
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class PhotoStatus(enum.StrEnum):
    """Lifecycle states of an uploaded photo."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


PENDING_STATUSES = (PhotoStatus.QUEUED, PhotoStatus.PROCESSING)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Photo(Base):
    """Uploaded photo and its simulated processing state."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False, default="")
    status: Mapped[PhotoStatus] = mapped_column(
        Enum(
            PhotoStatus,
            name="photo_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=PhotoStatus.QUEUED,
        index=True,
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Client-side default keeps sub-second ordering on sqlite.
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    logs: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Photo {self.id} status={self.status.value} progress={self.progress}>"
