"""Durable FIFO job queue.

JobQueue is the single entry point for admitting and mutating jobs. It
validates inputs, delegates persistence to a JobStore, wakes idle workers
on enqueue, and surfaces backend failures as QueueError.
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import ValidationError

from src.autopr.events.emitter import EventEmitter, NullEventEmitter
from src.autopr.events.models import EventType, PipelineEvent
from src.autopr.jobs.errors import QueueError
from src.autopr.jobs.models import Job, JobInput, JobResult, JobState, parse_job_input
from src.autopr.jobs.store import InMemoryJobStore, JobStore


logger = logging.getLogger(__name__)


def job_project_id(job: Job) -> str:
    """Project a job works on, for events and logs."""
    project_id = getattr(job.input, "project_id", None)
    return project_id or f"job-{job.id}"


class JobQueue:
    """FIFO queue of jobs over a JobStore.

    Jobs are claimed in admission order. Claiming is atomic in the store,
    so each waiting job is handed to exactly one worker.

    Attributes:
        store: The persistence backend.
        event_emitter: Receives a state-transition event for each enqueue.

    Example:
        >>> queue = JobQueue(InMemoryJobStore())
        >>> job = await queue.enqueue(
        ...     DirectSubmission(repo_url="https://github.com/acme/widget",
        ...                      task="Add a LICENSE file")
        ... )
        >>> claimed = await queue.claim_next()
        >>> claimed.id == job.id
        True
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.store = store if store is not None else InMemoryJobStore()
        self.event_emitter = event_emitter or NullEventEmitter()
        self._work_available = asyncio.Condition()

    async def enqueue(self, job_input: Any) -> Job:
        """Admit a job in state waiting with progress 0.

        Args:
            job_input: A JobInput model or a dict carrying a ``kind``.

        Returns:
            The stored job with its assigned id.

        Raises:
            pydantic.ValidationError: If the input is not a valid JobInput.
            QueueError: If the store cannot admit the job.
        """
        validated: JobInput = parse_job_input(job_input)
        job = await self._call_store("enqueue", self.store.insert(validated))

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "kind": validated.kind,
                "repo_url": validated.repo_url,
            },
        )
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.STATE_TRANSITION,
                job_id=job.id,
                project_id=job_project_id(job),
                details={"from_state": None, "to_state": JobState.WAITING.value},
            )
        )
        await self.notify()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        """Return the job with ``job_id``, or None if unknown."""
        return await self._call_store("get", self.store.get(job_id))

    async def claim_next(self) -> Optional[Job]:
        """Move the oldest waiting job to active and return it, if any."""
        return await self._call_store("claim", self.store.claim_next())

    async def update_progress(self, job_id: str, progress: int) -> Job:
        """Record a checkpoint for an active job.

        Raises:
            InvalidProgressError: If the job is not active, the value is
                outside 0..100, or it is below the current progress.
            JobNotFoundError: If the job is unknown.
        """
        return await self._call_store(
            "update_progress", self.store.set_progress(job_id, progress)
        )

    async def complete(self, job_id: str, result: JobResult) -> Job:
        """Move an active job to completed, keeping its progress."""
        return await self._call_store(
            "complete",
            self.store.finish(job_id, JobState.COMPLETED, result=result),
        )

    async def fail(self, job_id: str, reason: str) -> Job:
        """Move an active job to failed, keeping its progress."""
        return await self._call_store(
            "fail",
            self.store.finish(job_id, JobState.FAILED, failure_reason=reason),
        )

    async def ping(self) -> bool:
        """Return True if the store backend is reachable."""
        return await self.store.ping()

    async def notify(self, wake_all: bool = False) -> None:
        """Wake one idle worker (or all of them)."""
        async with self._work_available:
            if wake_all:
                self._work_available.notify_all()
            else:
                self._work_available.notify()

    async def wait_for_work(self, timeout: float) -> None:
        """Block until an enqueue notification arrives or ``timeout`` passes.

        The timeout keeps polling workers responsive to jobs enqueued by
        other processes sharing the same store.
        """
        async with self._work_available:
            try:
                await asyncio.wait_for(self._work_available.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    async def _safe_emit(self, event: PipelineEvent) -> None:
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit job event",
                extra={"event_type": event.event_type.value, "job_id": event.job_id},
            )

    async def _call_store(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except (QueueError, ValidationError):
            raise
        except Exception as e:
            logger.error(
                "Job store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise QueueError(f"Job store {operation} failed: {e}", cause=e) from e
