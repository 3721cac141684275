"""Tick loop that feeds the simulator, in pull and push flavours."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from time import perf_counter

from photoflow.config import settings
from photoflow.metrics import open_streams, tick_duration_seconds, tick_total
from photoflow.models import PhotoStatus
from photoflow.repository import PhotoRepository
from photoflow.schemas import PhotoOut, UpdateEvent
from photoflow.simulator import ProcessingSimulator

logger = logging.getLogger(__name__)

MAX_PUBLISH_FAILURES = 2

_CLOSED = object()


async def run_tick(
    simulator: ProcessingSimulator,
    repository: PhotoRepository,
    mode: str = "pull",
) -> int:
    """Start queued photos and advance processing ones. Returns photos visited.

    Errors propagate; photos updated before the failure keep their new state.
    """
    start = perf_counter()
    try:
        photos = await repository.get_processing_photos()
        for photo in photos:
            if photo.status == PhotoStatus.QUEUED:
                await simulator.start(photo.id)
            elif photo.status == PhotoStatus.PROCESSING:
                await simulator.advance(photo.id)
    except Exception:
        tick_total.labels(mode=mode, result="error").inc()
        raise
    finally:
        tick_duration_seconds.labels(mode=mode).observe(perf_counter() - start)

    tick_total.labels(mode=mode, result="ok").inc()
    return len(photos)


async def build_snapshot(repository: PhotoRepository) -> UpdateEvent:
    photos = await repository.get_processing_photos()
    return UpdateEvent(photos=[PhotoOut.model_validate(photo) for photo in photos])


def format_event(event: UpdateEvent) -> str:
    """Encode one server-sent event frame."""
    return f"data: {event.model_dump_json()}\n\n"


class UpdateStream:
    """Push-mode driver bound to a single client connection.

    A background task ticks every ``interval`` seconds and publishes a
    snapshot into a bounded buffer that :meth:`events` drains. The task stops
    when the client disconnects, when the consumer goes away, or when two
    publishes in a row find the buffer full.
    """

    def __init__(
        self,
        simulator: ProcessingSimulator,
        repository: PhotoRepository,
        *,
        interval: float | None = None,
        buffer_size: int | None = None,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ):
        self.simulator = simulator
        self.repository = repository
        self.interval = settings.stream_interval_seconds if interval is None else interval
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=settings.stream_buffer_size if buffer_size is None else buffer_size
        )
        self._is_disconnected = is_disconnected
        self._publish_failures = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def publish(self, event: UpdateEvent) -> bool:
        """Enqueue a snapshot; returns False when the buffer is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._publish_failures += 1
            logger.warning(
                "Event stream buffer full (%d consecutive failures)",
                self._publish_failures,
            )
            return False
        self._publish_failures = 0
        return True

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        open_streams.inc()
        try:
            try:
                self.publish(await build_snapshot(self.repository))
            except Exception:
                logger.exception("Failed to build initial snapshot")

            while True:
                await asyncio.sleep(self.interval)
                if self._is_disconnected is not None and await self._is_disconnected():
                    logger.info("Client disconnected, stopping event stream")
                    break
                try:
                    await run_tick(self.simulator, self.repository, mode="push")
                    event = await build_snapshot(self.repository)
                except Exception:
                    logger.exception("Event stream tick failed")
                    continue
                if not self.publish(event) and self._publish_failures >= MAX_PUBLISH_FAILURES:
                    logger.warning("Event stream consumer stalled, closing")
                    break
        finally:
            open_streams.dec()
            self._signal_closed()

    def _signal_closed(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[str]:
        """Yield encoded frames until the stream closes."""
        self.start()
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSED:
                    break
                yield format_event(item)
        finally:
            await self.close()
