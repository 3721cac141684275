"""Upload sanity check: the bytes must decode as an image."""

import io
import logging

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


class InvalidImageError(ValueError):
    pass


def verify_image(data: bytes) -> tuple[str, tuple[int, int]]:
    """Return ``(format, (width, height))`` or raise InvalidImageError."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            fmt, size = image.format, image.size
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise InvalidImageError(f"File is not a readable image: {exc}") from exc
    logger.debug("Verified %s image %dx%d", fmt, *size)
    return fmt, size
