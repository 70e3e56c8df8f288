"""Tests for the WorkerPool.

The processor is a scripted fake so these tests exercise scheduling,
concurrency limits and terminal-state recording without any pipeline.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional
from unittest.mock import AsyncMock

import pytest

from src.autopr.events.models import EventType
from src.autopr.jobs import (
    DirectSubmission,
    InMemoryJobStore,
    Job,
    JobQueue,
    JobState,
    QueueError,
    WorkerPool,
)
from src.autopr.pipeline.errors import PipelineStageError
from src.autopr.pipeline.models import JobOutcome, PipelineStage, ProgressReporter


def run_async(coro):
    return asyncio.run(coro)


def _submission(index: int = 0) -> DirectSubmission:
    return DirectSubmission(
        repo_url="https://github.com/acme/widget", task=f"Change number {index}"
    )


class ScriptedProcessor:
    """Reports the given checkpoints, then succeeds or raises."""

    def __init__(
        self,
        checkpoints: Optional[List[int]] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.checkpoints = checkpoints if checkpoints is not None else [10, 50, 90, 100]
        self.error = error
        self.gate = gate
        self.active = 0
        self.max_active = 0
        self.processed: List[str] = []

    async def process(self, job: Job, report_progress: ProgressReporter) -> JobOutcome:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0.01)
            for value in self.checkpoints:
                await report_progress(value)
            self.processed.append(job.id)
            if self.error is not None:
                raise self.error
            number = len(self.processed)
            return JobOutcome(
                pr_url=f"https://github.com/acme/widget/pull/{number}", pr_number=number
            )
        finally:
            self.active -= 1


async def _wait_until(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _all_terminal(queue: JobQueue, job_ids: List[str]) -> bool:
    for job_id in job_ids:
        job = await queue.get(job_id)
        if job.state not in (JobState.COMPLETED, JobState.FAILED):
            return False
    return True


class TestWorkerPool:
    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            WorkerPool(JobQueue(), ScriptedProcessor(), concurrency=0)

    def test_completes_jobs_with_results(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            processor = ScriptedProcessor()
            pool = WorkerPool(queue, processor, concurrency=2, poll_interval=0.05)
            await pool.start()
            jobs = [await queue.enqueue(_submission(i)) for i in range(3)]
            await _wait_until(lambda: _all_terminal(queue, [j.id for j in jobs]))
            await pool.stop()
            return [await queue.get(job.id) for job in jobs]

        finished = run_async(scenario())

        for job in finished:
            assert job.state == JobState.COMPLETED
            assert job.progress == 100
            assert job.result is not None
            assert job.result.pr_url.startswith("https://github.com/acme/widget/pull/")
        assert len({job.result.pr_number for job in finished}) == 3

    def test_never_exceeds_concurrency(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            gate = asyncio.Event()
            processor = ScriptedProcessor(gate=gate)
            pool = WorkerPool(queue, processor, concurrency=2, poll_interval=0.05)
            await pool.start()
            jobs = [await queue.enqueue(_submission(i)) for i in range(5)]

            await asyncio.sleep(0.2)
            waiting = [await queue.get(job.id) for job in jobs]
            active_while_gated = pool.active_jobs

            gate.set()
            await _wait_until(lambda: _all_terminal(queue, [j.id for j in jobs]))
            await pool.stop()
            return processor, waiting, active_while_gated

        processor, snapshot, active_while_gated = run_async(scenario())

        assert processor.max_active == 2
        assert active_while_gated == 2
        states = [job.state for job in snapshot]
        assert states.count(JobState.ACTIVE) == 2
        assert states.count(JobState.WAITING) == 3
        # Oldest jobs are claimed first
        assert states[:2] == [JobState.ACTIVE, JobState.ACTIVE]

    def test_failure_records_reason_and_keeps_progress(self):
        cause = RuntimeError("repository not found")

        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            processor = ScriptedProcessor(
                checkpoints=[10, 20],
                error=PipelineStageError(PipelineStage.CLONING, cause),
            )
            pool = WorkerPool(queue, processor, concurrency=1, poll_interval=0.05)
            await pool.start()
            job = await queue.enqueue(_submission())
            await _wait_until(lambda: _all_terminal(queue, [job.id]))
            await pool.stop()
            return await queue.get(job.id)

        job = run_async(scenario())

        assert job.state == JobState.FAILED
        assert job.progress == 20
        assert job.failure_reason == "cloning: repository not found"
        assert job.result is None

    def test_failure_without_message_uses_class_name(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            pool = WorkerPool(
                queue, ScriptedProcessor(error=KeyError()), concurrency=1, poll_interval=0.05
            )
            await pool.start()
            job = await queue.enqueue(_submission())
            await _wait_until(lambda: _all_terminal(queue, [job.id]))
            await pool.stop()
            return await queue.get(job.id)

        assert run_async(scenario()).failure_reason == "KeyError"

    def test_unrecorded_completion_fails_the_job(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            queue.complete = AsyncMock(side_effect=QueueError("database unavailable"))
            pool = WorkerPool(queue, ScriptedProcessor(), concurrency=1, poll_interval=0.05)
            await pool.start()
            job = await queue.enqueue(_submission())
            await _wait_until(lambda: _all_terminal(queue, [job.id]))
            await pool.stop()
            return await queue.get(job.id)

        job = run_async(scenario())

        assert job.state == JobState.FAILED
        assert job.failure_reason == "database unavailable"
        assert job.result is None

    def test_one_failure_does_not_stop_the_pool(self):
        class FlakyProcessor(ScriptedProcessor):
            async def process(self, job, report_progress):
                if job.input.task.endswith("0"):
                    raise RuntimeError("boom")
                return await super().process(job, report_progress)

        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            pool = WorkerPool(queue, FlakyProcessor(), concurrency=1, poll_interval=0.05)
            await pool.start()
            jobs = [await queue.enqueue(_submission(i)) for i in range(3)]
            await _wait_until(lambda: _all_terminal(queue, [j.id for j in jobs]))
            await pool.stop()
            return [(await queue.get(job.id)).state for job in jobs]

        assert run_async(scenario()) == [
            JobState.FAILED,
            JobState.COMPLETED,
            JobState.COMPLETED,
        ]

    def test_emits_lifecycle_events(self):
        async def scenario():
            emitter = AsyncMock()
            queue = JobQueue(InMemoryJobStore())
            pool = WorkerPool(
                queue,
                ScriptedProcessor(checkpoints=[10]),
                concurrency=1,
                poll_interval=0.05,
                event_emitter=emitter,
            )
            await pool.start()
            job = await queue.enqueue(_submission())
            await _wait_until(lambda: _all_terminal(queue, [job.id]))
            await pool.stop()
            return [call.args[0] for call in emitter.emit.await_args_list]

        events = run_async(scenario())

        assert [event.event_type for event in events] == [
            EventType.STATE_TRANSITION,
            EventType.PROGRESS,
            EventType.STATE_TRANSITION,
            EventType.COMPLETION,
        ]
        assert events[0].details["to_state"] == "active"
        assert events[2].details["to_state"] == "completed"
        assert events[3].details["pr_number"] == 1

    def test_stop_waits_for_in_flight_job(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            gate = asyncio.Event()
            pool = WorkerPool(queue, ScriptedProcessor(gate=gate), concurrency=1, poll_interval=0.05)
            await pool.start()
            job = await queue.enqueue(_submission())
            await asyncio.sleep(0.1)

            stopper = asyncio.create_task(pool.stop())
            await asyncio.sleep(0.05)
            stopped_early = stopper.done()
            gate.set()
            await stopper
            return stopped_early, await queue.get(job.id), pool.running

        stopped_early, job, running = run_async(scenario())

        assert stopped_early is False
        assert job.state == JobState.COMPLETED
        assert running is False

    def test_stopped_pool_claims_nothing(self):
        async def scenario():
            queue = JobQueue(InMemoryJobStore())
            pool = WorkerPool(queue, ScriptedProcessor(), concurrency=2, poll_interval=0.05)
            await pool.start()
            await pool.stop()
            job = await queue.enqueue(_submission())
            await asyncio.sleep(0.1)
            return await queue.get(job.id)

        assert run_async(scenario()).state == JobState.WAITING
