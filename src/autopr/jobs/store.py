"""Job storage backends.

This module implements the JobStore protocol twice:
- InMemoryJobStore: single-process store, the default
- PostgresJobStore: asyncpg-backed store shared by the API process and
  standalone worker processes

Both backends enforce the job invariants at write time: only waiting jobs
can be claimed, only active jobs can take progress or reach a terminal
state, and progress never decreases.
"""

import itertools
import json
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, Optional, Protocol

import asyncpg

from src.autopr.jobs.errors import (
    InvalidProgressError,
    InvalidTransitionError,
    JobNotFoundError,
    QueueError,
)
from src.autopr.jobs.models import (
    Job,
    JobInput,
    JobResult,
    JobState,
    is_valid_transition,
    parse_job_input,
)


logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Protocol for job persistence.

    Implementations must make ``claim_next`` atomic: a waiting job is
    handed to at most one caller.
    """

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def insert(self, job_input: JobInput) -> Job:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def claim_next(self) -> Optional[Job]:
        ...

    async def set_progress(self, job_id: str, progress: int) -> Job:
        ...

    async def finish(
        self,
        job_id: str,
        state: JobState,
        result: Optional[JobResult] = None,
        failure_reason: Optional[str] = None,
    ) -> Job:
        ...


def new_job_id() -> str:
    """Return a fresh opaque job identifier."""
    return uuid.uuid4().hex


def check_progress_update(job: Job, progress: int) -> None:
    """Raise InvalidProgressError unless ``progress`` may be written to ``job``."""
    if job.state != JobState.ACTIVE:
        raise InvalidProgressError(
            job.id, f"job is {job.state.value}, not active"
        )
    if not 0 <= progress <= 100:
        raise InvalidProgressError(job.id, f"{progress} is outside 0..100")
    if progress < job.progress:
        raise InvalidProgressError(
            job.id, f"{progress} is below current progress {job.progress}"
        )


def check_transition(job: Job, to_state: JobState) -> None:
    """Raise InvalidTransitionError unless ``job`` may move to ``to_state``."""
    if not is_valid_transition(job.state, to_state):
        raise InvalidTransitionError(job.id, job.state, to_state)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore:
    """Process-local job store.

    Every operation completes without suspending, so each one is atomic
    with respect to other coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._sequence = itertools.count(1)

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    async def insert(self, job_input: JobInput) -> Job:
        job = Job(
            id=new_job_id(),
            sequence=next(self._sequence),
            input=job_input,
        )
        self._jobs[job.id] = job
        self._waiting.append(job.id)
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def claim_next(self) -> Optional[Job]:
        while self._waiting:
            job = self._jobs[self._waiting.popleft()]
            if job.state != JobState.WAITING:
                continue
            job.state = JobState.ACTIVE
            job.started_at = _utcnow()
            return job.model_copy(deep=True)
        return None

    async def set_progress(self, job_id: str, progress: int) -> Job:
        job = self._require(job_id)
        check_progress_update(job, progress)
        job.progress = progress
        return job.model_copy(deep=True)

    async def finish(
        self,
        job_id: str,
        state: JobState,
        result: Optional[JobResult] = None,
        failure_reason: Optional[str] = None,
    ) -> Job:
        job = self._require(job_id)
        check_transition(job, state)
        job.state = state
        job.result = result
        job.failure_reason = failure_reason
        job.finished_at = _utcnow()
        return job.model_copy(deep=True)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


_SCHEMA = """
CREATE TABLE IF NOT EXISTS autopr_jobs (
    sequence BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL,
    input JSONB NOT NULL,
    state TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    result JSONB,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    started_at TIMESTAMPTZ,
    finished_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS autopr_jobs_waiting_idx
    ON autopr_jobs (sequence) WHERE state = 'waiting';
"""

_COLUMNS = (
    "sequence, id, input, state, progress, result, failure_reason, "
    "created_at, started_at, finished_at"
)


class PostgresJobStore:
    """PostgreSQL implementation of the JobStore protocol.

    Claims use ``FOR UPDATE SKIP LOCKED`` so any number of worker
    processes can share one queue without handing a job out twice.
    Progress and terminal writes are conditional updates; when a condition
    does not hold the current row is re-read to raise the precise error.

    Example:
        >>> async with PostgresJobStore("postgresql://...") as store:
        ...     job = await store.insert(job_input)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise QueueError("Job store not connected. Call connect() first.")
        return self._pool

    async def connect(self) -> None:
        """Create the connection pool and the jobs table if needed.

        Raises:
            QueueError: If the database is unreachable.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
            logger.info("PostgreSQL job store ready")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise QueueError(
                f"Failed to connect to PostgreSQL: {e}", cause=e
            ) from e

    async def close(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresJobStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.warning("Job store ping failed", extra={"error": str(e)})
            return False

    async def insert(self, job_input: JobInput) -> Job:
        try:
            async with self._transaction() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO autopr_jobs (id, kind, input, state, progress, created_at)
                    VALUES ($1, $2, $3::jsonb, $4, 0, $5)
                    RETURNING {_COLUMNS}
                    """,
                    new_job_id(),
                    job_input.kind,
                    json.dumps(job_input.model_dump(mode="json")),
                    JobState.WAITING.value,
                    _utcnow(),
                )
            return self._row_to_job(row)
        except QueueError:
            raise
        except Exception as e:
            logger.error("Failed to insert job", extra={"error": str(e)})
            raise QueueError(f"Failed to insert job: {e}", cause=e) from e

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM autopr_jobs WHERE id = $1",
                    job_id,
                )
            return self._row_to_job(row) if row is not None else None
        except QueueError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get job", extra={"job_id": job_id, "error": str(e)}
            )
            raise QueueError(f"Failed to get job: {e}", cause=e) from e

    async def claim_next(self) -> Optional[Job]:
        try:
            async with self._transaction() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE autopr_jobs
                    SET state = $1, started_at = $2
                    WHERE sequence = (
                        SELECT sequence FROM autopr_jobs
                        WHERE state = $3
                        ORDER BY sequence
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    RETURNING {_COLUMNS}
                    """,
                    JobState.ACTIVE.value,
                    _utcnow(),
                    JobState.WAITING.value,
                )
            return self._row_to_job(row) if row is not None else None
        except QueueError:
            raise
        except Exception as e:
            logger.error("Failed to claim job", extra={"error": str(e)})
            raise QueueError(f"Failed to claim job: {e}", cause=e) from e

    async def set_progress(self, job_id: str, progress: int) -> Job:
        try:
            async with self._transaction() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE autopr_jobs
                    SET progress = $2
                    WHERE id = $1 AND state = $3 AND progress <= $2
                        AND $2 BETWEEN 0 AND 100
                    RETURNING {_COLUMNS}
                    """,
                    job_id,
                    progress,
                    JobState.ACTIVE.value,
                )
        except Exception as e:
            logger.error(
                "Failed to update progress",
                extra={"job_id": job_id, "error": str(e)},
            )
            raise QueueError(f"Failed to update progress: {e}", cause=e) from e

        if row is None:
            current = await self._require(job_id)
            check_progress_update(current, progress)
            raise InvalidProgressError(job_id, "concurrent update")
        return self._row_to_job(row)

    async def finish(
        self,
        job_id: str,
        state: JobState,
        result: Optional[JobResult] = None,
        failure_reason: Optional[str] = None,
    ) -> Job:
        try:
            async with self._transaction() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE autopr_jobs
                    SET state = $2, result = $3::jsonb, failure_reason = $4,
                        finished_at = $5
                    WHERE id = $1 AND state = $6
                    RETURNING {_COLUMNS}
                    """,
                    job_id,
                    state.value,
                    json.dumps(result.model_dump()) if result else None,
                    failure_reason,
                    _utcnow(),
                    JobState.ACTIVE.value,
                )
        except Exception as e:
            logger.error(
                "Failed to finish job",
                extra={"job_id": job_id, "state": state.value, "error": str(e)},
            )
            raise QueueError(f"Failed to finish job: {e}", cause=e) from e

        if row is None:
            current = await self._require(job_id)
            check_transition(current, state)
            raise InvalidTransitionError(job_id, current.state, state)
        return self._row_to_job(row)

    async def _require(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    def _row_to_job(row: Any) -> Job:
        """Convert a database row to a Job.

        JSONB columns arrive as text unless a codec is registered on the
        connection, so both forms are accepted.
        """
        raw_input = row["input"]
        if isinstance(raw_input, str):
            raw_input = json.loads(raw_input)

        result = None
        if row["result"]:
            raw_result = row["result"]
            if isinstance(raw_result, str):
                raw_result = json.loads(raw_result)
            result = JobResult(**raw_result)

        return Job(
            id=row["id"],
            sequence=row["sequence"],
            input=parse_job_input(raw_input),
            state=JobState(row["state"]),
            progress=row["progress"],
            result=result,
            failure_reason=row["failure_reason"],
            created_at=_as_utc(row["created_at"]),
            started_at=_as_utc(row["started_at"]),
            finished_at=_as_utc(row["finished_at"]),
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
