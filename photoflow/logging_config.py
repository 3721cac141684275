"""JSON logging shared by the API and the Celery worker.

Each record carries the ``service`` that wrote it plus the request and photo it
concerns, so one photo's lifecycle can be followed across the upload request,
the ticks that advance it and the background worker.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger import jsonlogger

from photoflow.config import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="N/A")
photo_id_ctx: ContextVar[str] = ContextVar("photo_id", default="N/A")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(service)s %(request_id)s %(photo_id)s"

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "botocore", "aiosqlite", "celery.beat")


class PhotoContextFilter(logging.Filter):
    """Stamp records with the service name and the current request and photo ids."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def filter(self, record):
        record.service = self.service
        record.request_id = request_id_ctx.get()
        record.photo_id = photo_id_ctx.get()
        return True


def setup_logging(service: str = "photoflow") -> None:
    """Route every logger through one stdout JSON handler for ``service``."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            LOG_FORMAT,
            rename_fields={"levelname": "level", "asctime": "timestamp"},
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
    )
    handler.addFilter(PhotoContextFilter(service))

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    # Uvicorn and Celery install their own handlers; replace them to avoid duplicate lines.
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("JSON logging configured for %s", service)
