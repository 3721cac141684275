"""Celery application configuration and the beat-driven processing tick."""
# ruff: noqa: I001

import logging

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger, task_failure, task_prerun, task_postrun
from kombu import Exchange, Queue

from photoflow.config import settings
from photoflow.logging_config import photo_id_ctx, request_id_ctx, setup_logging
from photoflow.observability import setup_celery_observability

# --- Celery App ---
celery_app = Celery(
    "photoflow",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
)

default_exchange = Exchange("default", type="direct")

celery_app.conf.task_queues = [
    Queue("default_queue", exchange=default_exchange, routing_key="default"),
]
celery_app.conf.task_default_queue = "default_queue"
celery_app.conf.task_routes = {
    "photoflow.tasks.ticker.*": {"queue": "default_queue"},
}

if settings.background_tick_enabled:
    celery_app.conf.beat_schedule = {
        "advance-pending-photos": {
            "task": "photoflow.tasks.ticker.advance_pending_photos",
            "schedule": settings.background_tick_seconds,
            # A late tick is worthless once the next one is due.
            "options": {"expires": settings.background_tick_seconds},
        }
    }

celery_app.conf.broker_connection_retry_on_startup = True
# The simulator's job map lives in worker memory; one process keeps it coherent.
celery_app.conf.worker_concurrency = 1

# --- Serialization ---
celery_app.conf.accept_content = ["json"]
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"

# --- Task limits ---
celery_app.conf.task_time_limit = 60
celery_app.conf.task_soft_time_limit = 50

# --- Observability ---
setup_celery_observability()

logger = logging.getLogger(__name__)

# --- Import task modules so they register with the app ---
import photoflow.tasks.ticker  # noqa: E402,F401


@after_setup_logger.connect
@after_setup_task_logger.connect
def setup_celery_logging(*args, **kwargs):  # noqa: ARG001
    """Ensure all worker and task logs use our structured JSON logging."""
    setup_logging(settings.otel_service_name_worker)


@task_prerun.connect
def on_task_prerun(task_id=None, task=None, **extra):  # noqa: ARG001
    """Pick up the request correlation id from task headers."""
    if task is None:
        return
    headers = getattr(task.request, "headers", None) or {}
    request_id_ctx.set(str(headers.get("X-Request-ID", task_id or "N/A")))


@task_postrun.connect
def on_task_postrun(**extra):  # noqa: ARG001
    """Reset correlation context."""
    request_id_ctx.set("N/A")
    photo_id_ctx.set("N/A")


@task_failure.connect
def on_task_failure(sender=None, task_id=None, exception=None, **extra):  # noqa: ARG001
    logger.error(
        "task_failure",
        extra={
            "event": "task_failure",
            "data": {
                "task_id": task_id,
                "task_name": str(getattr(sender, "name", sender or "unknown")),
                "error": str(exception) if exception else "unknown",
            },
        },
    )
