"""Simulated photo processing.

No pixels are touched. Each photo gets a transient ``ProcessingJob`` with a
random duration and a small chance of failing half-way through; every call to
:meth:`ProcessingSimulator.advance` turns the elapsed time into a progress
percentage, milestone log lines and, eventually, a terminal status written
back through :class:`~photoflow.repository.PhotoRepository`.

Jobs live only in the memory of the process that created them. Another
process (a second API worker, the Celery ticker) holds its own map, so it will
rebuild the job from the stored photo and restart the timer.
"""

import enum
import logging
import math
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from photoflow.config import settings
from photoflow.logging_config import photo_id_ctx
from photoflow.metrics import simulated_outcome_total
from photoflow.models import PENDING_STATUSES, PhotoStatus
from photoflow.repository import PhotoNotFoundError, PhotoRepository

logger = logging.getLogger(__name__)

FAILURE_WINDOW = (30, 70)
TERMINAL_FAILURE_MESSAGE = "Processing failed after multiple attempts"


class Stage(enum.Enum):
    """Milestones reported while a job runs, keyed by their upper progress bound."""

    ANALYZING = (20, "Analyzing image metadata")
    EXTRACTING = (40, "Extracting features")
    ENHANCING = (60, "Applying enhancements")
    OPTIMIZING = (80, "Optimizing image")
    FINALIZING = (95, "Finalizing output")

    def __init__(self, upper_bound: int, message: str):
        self.upper_bound = upper_bound
        self.message = message

    @classmethod
    def for_progress(cls, progress: int) -> "Stage | None":
        for stage in cls:
            if progress < stage.upper_bound:
                return stage
        return None


class StepOutcome(enum.StrEnum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass(frozen=True)
class StepDecision:
    outcome: StepOutcome
    progress: int
    milestone: Stage | None = None


@dataclass(frozen=True)
class FailurePlan:
    attempt: int
    requeue: bool


def compute_progress(elapsed: float, duration: float) -> int:
    """Whole percent of ``duration`` covered by ``elapsed``, clamped to 0..100."""
    if duration <= 0:
        return 100
    return max(0, min(100, math.floor(elapsed / duration * 100)))


def decide_step(
    elapsed: float,
    duration: float,
    will_fail: bool,
    emitted: frozenset[Stage] | set[Stage] = frozenset(),
) -> StepDecision:
    """Decide what one advance does, given the job's timeline and emitted stages."""
    progress = compute_progress(elapsed, duration)

    low, high = FAILURE_WINDOW
    if will_fail and low < progress < high:
        return StepDecision(StepOutcome.FAIL, progress)

    stage = Stage.for_progress(progress)
    milestone = stage if stage is not None and stage not in emitted else None

    if progress >= 100:
        return StepDecision(StepOutcome.COMPLETE, progress, milestone)
    return StepDecision(StepOutcome.CONTINUE, progress, milestone)


def plan_failure(retry_count: int, max_retries: int) -> FailurePlan:
    """Attempt number of the failed run and whether another run is allowed."""
    attempt = retry_count + 1
    return FailurePlan(attempt=attempt, requeue=attempt < max_retries)


@dataclass
class ProcessingJob:
    photo_id: str
    start_time: float
    duration: float
    will_fail: bool
    logs: list[dict] = field(default_factory=list)
    stages: set[Stage] = field(default_factory=set)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProcessingSimulator:
    """Owns the per-process map of live jobs and drives their state machine."""

    def __init__(
        self,
        repository: PhotoRepository,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        min_duration: float | None = None,
        max_duration: float | None = None,
        failure_rate: float | None = None,
        max_retries: int | None = None,
    ):
        self.repository = repository
        self.rng = rng or random.Random(settings.simulator_seed)
        self.clock = clock
        self.now = now
        self.min_duration = settings.min_duration_seconds if min_duration is None else min_duration
        self.max_duration = settings.max_duration_seconds if max_duration is None else max_duration
        self.failure_rate = settings.failure_rate if failure_rate is None else failure_rate
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self._jobs: dict[str, ProcessingJob] = {}

    def has_job(self, photo_id: str) -> bool:
        return photo_id in self._jobs

    def get_job(self, photo_id: str) -> ProcessingJob | None:
        return self._jobs.get(photo_id)

    def active_jobs(self) -> list[str]:
        return list(self._jobs)

    def discard(self, photo_id: str) -> None:
        self._jobs.pop(photo_id, None)

    def _forget(self, job: ProcessingJob) -> None:
        # A newer job for the same photo may have replaced this one.
        if self._jobs.get(job.photo_id) is job:
            del self._jobs[job.photo_id]

    def _log(self, job: ProcessingJob, message: str) -> None:
        job.logs.append({"timestamp": self.now().isoformat(), "message": message})

    async def start(self, photo_id: str) -> None:
        """Create a job for a queued photo and mark it processing.

        Does nothing when a job already exists for ``photo_id``.
        """
        if photo_id in self._jobs:
            return

        # Registered before the first await so a concurrent start() sees it.
        job = ProcessingJob(
            photo_id=photo_id,
            start_time=self.clock(),
            duration=self.rng.uniform(self.min_duration, self.max_duration),
            will_fail=self.rng.random() < self.failure_rate,
        )
        self._jobs[photo_id] = job

        try:
            photo = await self.repository.get_photo(photo_id)
            if photo is None:
                raise PhotoNotFoundError(photo_id)

            job.logs[:0] = list(photo.logs or [])
            self._log(job, "Processing started")
            await self.repository.update_photo(
                photo_id,
                status=PhotoStatus.PROCESSING,
                progress=0,
                logs=job.logs,
            )
        except PhotoNotFoundError:
            logger.warning("Cannot start processing: photo %s no longer exists", photo_id)
            self._forget(job)
            return
        except BaseException:
            # The photo is still queued; leave no job behind so the next tick can start it.
            self._forget(job)
            raise

        logger.info(
            "Processing started for photo %s (duration=%.1fs, will_fail=%s)",
            photo_id,
            job.duration,
            job.will_fail,
        )

    async def advance(self, photo_id: str) -> bool:
        """Move one job forward. Returns True while the photo still needs ticks."""
        token = photo_id_ctx.set(photo_id)
        try:
            return await self._advance(photo_id)
        except PhotoNotFoundError:
            logger.warning("Photo %s was deleted while processing", photo_id)
            self.discard(photo_id)
            return False
        finally:
            photo_id_ctx.reset(token)

    async def _advance(self, photo_id: str) -> bool:
        job = self._jobs.get(photo_id)
        if job is None:
            photo = await self.repository.get_photo(photo_id)
            if photo is not None and photo.status in PENDING_STATUSES:
                logger.info("Rebuilding lost job for photo %s", photo_id)
                await self.start(photo_id)
                return True
            return False

        decision = decide_step(
            self.clock() - job.start_time, job.duration, job.will_fail, job.stages
        )

        if decision.outcome is StepOutcome.FAIL:
            return await self._fail(job, decision.progress)

        if decision.milestone is not None:
            job.stages.add(decision.milestone)
            self._log(job, decision.milestone.message)

        if decision.outcome is StepOutcome.COMPLETE:
            self.discard(photo_id)
            self._log(job, "Processing completed successfully")
            await self.repository.update_photo(
                photo_id,
                status=PhotoStatus.DONE,
                progress=100,
                logs=job.logs,
                processed_at=self.now(),
            )
            simulated_outcome_total.labels(outcome="done").inc()
            logger.info("Processing completed for photo %s", photo_id)
            return False

        await self.repository.update_photo(
            photo_id,
            status=PhotoStatus.PROCESSING,
            progress=decision.progress,
            logs=job.logs,
        )
        return True

    async def _fail(self, job: ProcessingJob, progress: int) -> bool:
        photo_id = job.photo_id
        self.discard(photo_id)

        photo = await self.repository.get_photo(photo_id)
        if photo is None:
            raise PhotoNotFoundError(photo_id)
        plan = plan_failure(photo.retry_count, self.max_retries)

        self._log(
            job,
            f"Processing failed: Unexpected error occurred "
            f"(Attempt {plan.attempt}/{self.max_retries})",
        )

        if plan.requeue:
            self._log(job, "Retrying processing...")
            await self.repository.update_photo(
                photo_id,
                status=PhotoStatus.QUEUED,
                progress=0,
                error=None,
                logs=job.logs,
                retry_count=plan.attempt,
            )
            simulated_outcome_total.labels(outcome="requeued").inc()
            logger.warning(
                "Processing attempt %d/%d failed for photo %s at %d%%, requeued",
                plan.attempt,
                self.max_retries,
                photo_id,
                progress,
            )
            await self.start(photo_id)
            return True

        await self.repository.update_photo(
            photo_id,
            status=PhotoStatus.FAILED,
            progress=progress,
            error=TERMINAL_FAILURE_MESSAGE,
            logs=job.logs,
            retry_count=plan.attempt,
        )
        simulated_outcome_total.labels(outcome="failed").inc()
        logger.error(
            "Processing failed for photo %s after %d attempts", photo_id, plan.attempt
        )
        return False
