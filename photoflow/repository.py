"""Photo persistence: the record store used by the upload path and the simulator."""

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from photoflow.config import settings
from photoflow.models import PENDING_STATUSES, Photo, PhotoStatus

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"status", "progress", "processed_at", "error", "logs", "retry_count", "url"}
)


class PhotoNotFoundError(LookupError):
    """Raised when an update targets a photo that does not exist."""

    def __init__(self, photo_id: str):
        super().__init__(f"Photo {photo_id} not found")
        self.photo_id = photo_id


class PhotoRepository:
    """Async CRUD over the ``photos`` table.

    Every write runs in its own session and commits immediately, so a failure
    part-way through a tick leaves earlier photos with their new state.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_photo(self, photo_id: str, name: str, url: str) -> Photo:
        """Insert a fresh record at status=queued, progress=0, empty logs."""
        photo = Photo(
            id=photo_id,
            name=name,
            url=url,
            status=PhotoStatus.QUEUED,
            progress=0,
            logs=[],
            retry_count=0,
        )
        async with self._session_factory() as session:
            session.add(photo)
            await session.commit()
        logger.info("Photo %s created", photo_id)
        return photo

    async def get_photo(self, photo_id: str) -> Photo | None:
        async with self._session_factory() as session:
            return await session.get(Photo, photo_id)

    async def get_all_photos(self) -> list[Photo]:
        return await self._select(order_by=Photo.uploaded_at.desc())

    async def get_processing_photos(self) -> list[Photo]:
        """Photos still queued or processing, oldest upload first."""
        return await self._select(
            Photo.status.in_(PENDING_STATUSES),
            order_by=Photo.uploaded_at.asc(),
        )

    async def get_done_photos(self) -> list[Photo]:
        return await self._select(
            Photo.status == PhotoStatus.DONE,
            order_by=Photo.processed_at.desc(),
        )

    async def get_failed_photos(self) -> list[Photo]:
        """Failed photos that still have retry budget left."""
        return await self._select(
            Photo.status == PhotoStatus.FAILED,
            Photo.retry_count < settings.max_retries,
            order_by=Photo.uploaded_at.asc(),
        )

    async def update_photo(self, photo_id: str, **fields) -> None:
        """Merge only the provided fields into the stored record."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported photo fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            photo = await session.get(Photo, photo_id)
            if photo is None:
                raise PhotoNotFoundError(photo_id)
            for field, value in fields.items():
                if field == "logs":
                    value = list(value)
                setattr(photo, field, value)
            await session.commit()

    async def delete_photos(self, photo_ids: Iterable[str]) -> int:
        ids = list(photo_ids)
        if not ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(delete(Photo).where(Photo.id.in_(ids)))
            await session.commit()
        deleted = result.rowcount or 0
        logger.info("Deleted %d photos", deleted)
        return deleted

    async def _select(self, *criteria, order_by) -> list[Photo]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Photo).where(*criteria).order_by(order_by)
            )
            return list(result.scalars().all())
