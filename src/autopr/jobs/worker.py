"""Bounded worker pool draining the job queue.

The pool runs a fixed number of asyncio worker tasks. Each worker claims
the oldest waiting job, runs it through the processor, records the
terminal state, and immediately claims the next job. With nothing waiting
it sleeps on the queue's wake-up signal, polling at ``poll_interval`` so
jobs enqueued by other processes are picked up too.

Jobs are never retried, timed out or cancelled; ``stop()`` stops claiming
and waits for in-flight jobs to finish.
"""

import asyncio
import logging
import time
from typing import List, Optional, Protocol

from src.autopr.events.emitter import EventEmitter, NullEventEmitter
from src.autopr.events.models import EventType, PipelineEvent
from src.autopr.jobs.models import Job, JobResult, JobState
from src.autopr.jobs.queue import JobQueue, job_project_id
from src.autopr.pipeline.errors import PipelineStageError, describe_error
from src.autopr.pipeline.models import JobOutcome, ProgressReporter


logger = logging.getLogger(__name__)


class JobRunner(Protocol):
    """Anything that turns an active job into a JobOutcome."""

    async def process(
        self, job: Job, report_progress: ProgressReporter
    ) -> JobOutcome:
        ...


class WorkerPool:
    """Runs at most ``concurrency`` jobs at a time.

    Attributes:
        queue: Source of jobs and sink of their terminal states.
        processor: Runs one job through the pipeline.
        concurrency: Number of worker tasks (and maximum active jobs).
        poll_interval: Seconds an idle worker waits before re-checking.
        event_emitter: Receives state-transition, completion and error events.

    Example:
        >>> pool = WorkerPool(queue, processor, concurrency=2)
        >>> await pool.start()
        >>> ...
        >>> await pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobRunner,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        event_emitter: Optional[EventEmitter] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.event_emitter = event_emitter or NullEventEmitter()
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._active_jobs = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def active_jobs(self) -> int:
        """Number of jobs currently being processed by this pool."""
        return self._active_jobs

    async def start(self) -> None:
        """Spawn the worker tasks. Calling start on a running pool is a no-op."""
        if self._tasks:
            logger.warning("Worker pool already started")
            return

        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"autopr-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(
            "Worker pool started",
            extra={"concurrency": self.concurrency, "poll_interval": self.poll_interval},
        )

    async def stop(self) -> None:
        """Stop claiming jobs and wait for in-flight jobs to finish."""
        if not self._tasks:
            return

        logger.info(
            "Stopping worker pool", extra={"active_jobs": self._active_jobs}
        )
        self._stopping.set()
        await self.queue.notify(wake_all=True)
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.queue.claim_next()
            except Exception:
                logger.exception(
                    "Failed to claim job", extra={"worker_id": worker_id}
                )
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            self._active_jobs += 1
            try:
                await self._run_job(job, worker_id)
            finally:
                self._active_jobs -= 1

    async def _idle(self) -> None:
        if not self._stopping.is_set():
            await self.queue.wait_for_work(self.poll_interval)

    async def _run_job(self, job: Job, worker_id: int) -> None:
        started = time.monotonic()
        project_id = job_project_id(job)

        logger.info(
            "Job claimed",
            extra={"job_id": job.id, "worker_id": worker_id, "project_id": project_id},
        )
        await self._emit(
            job,
            EventType.STATE_TRANSITION,
            {"from_state": JobState.WAITING.value, "to_state": JobState.ACTIVE.value},
        )

        async def report_progress(progress: int) -> None:
            await self.queue.update_progress(job.id, progress)
            await self._emit(job, EventType.PROGRESS, {"progress": progress})

        try:
            outcome = await self.processor.process(job, report_progress)
        except Exception as exc:
            await self._record_failure(job, exc, time.monotonic() - started)
            return

        duration = time.monotonic() - started
        try:
            await self.queue.complete(
                job.id,
                JobResult(pr_url=outcome.pr_url, pr_number=outcome.pr_number),
            )
        except Exception as exc:
            logger.exception(
                "Failed to record job completion", extra={"job_id": job.id}
            )
            # An unrecorded completion must not leave the job active
            await self._record_failure(job, exc, duration)
            return

        logger.info(
            "Job completed",
            extra={
                "job_id": job.id,
                "pr_url": outcome.pr_url,
                "pr_number": outcome.pr_number,
                "duration_seconds": round(duration, 3),
            },
        )
        await self._emit(
            job,
            EventType.STATE_TRANSITION,
            {"from_state": JobState.ACTIVE.value, "to_state": JobState.COMPLETED.value},
        )
        await self._emit(
            job,
            EventType.COMPLETION,
            {
                "pr_url": outcome.pr_url,
                "pr_number": outcome.pr_number,
                "duration_seconds": duration,
            },
        )

    async def _record_failure(
        self, job: Job, exc: Exception, duration: float
    ) -> None:
        reason = describe_error(exc)
        stage = exc.stage.value if isinstance(exc, PipelineStageError) else "unknown"

        logger.error(
            "Job failed",
            exc_info=exc,
            extra={"job_id": job.id, "stage": stage, "reason": reason},
        )

        try:
            await self.queue.fail(job.id, reason)
        except Exception:
            logger.exception("Failed to record job failure", extra={"job_id": job.id})
            return

        await self._emit(
            job,
            EventType.STATE_TRANSITION,
            {"from_state": JobState.ACTIVE.value, "to_state": JobState.FAILED.value},
        )
        await self._emit(
            job,
            EventType.ERROR,
            {
                "stage": stage,
                "error_message": reason,
                "error_type": type(exc).__name__,
                "duration_seconds": duration,
            },
        )

    async def _emit(self, job: Job, event_type: EventType, details: dict) -> None:
        """Emit an event, logging instead of raising on sink failures."""
        event = PipelineEvent(
            event_type=event_type,
            job_id=job.id,
            project_id=job_project_id(job),
            details=details,
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit job event",
                extra={"event_type": event_type.value, "job_id": job.id},
            )
