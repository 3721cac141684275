"""Upload de-duplication keyed by the client's ``Idempotency-Key`` header.

A client that re-sends the same upload (a flaky network, a double click) gets
the photo created by the first request back, not a second photo. Keys live in
Redis for ``idempotency_ttl_seconds``.
"""

import logging

import redis

from photoflow.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "photoflow:upload-key:"

_redis_client = None


def _get_redis():
    """Lazy-init Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _redis_key(key: str) -> str:
    return f"{KEY_PREFIX}{key.strip()}"


def find_uploaded_photo(key: str) -> str | None:
    """Id of the photo an earlier upload with ``key`` created, if any."""
    return _get_redis().get(_redis_key(key))


def remember_upload(key: str, photo_id: str) -> bool:
    """Bind ``key`` to ``photo_id`` unless another upload claimed it first.

    Returns False when the key was already bound; the earlier binding is kept.
    """
    stored = _get_redis().set(
        _redis_key(key),
        photo_id,
        ex=settings.idempotency_ttl_seconds,
        nx=True,
    )
    if not stored:
        logger.warning("Upload key %s already bound, photo %s not recorded", key, photo_id)
        return False
    logger.info("Upload key %s bound to photo %s", key, photo_id)
    return True
