"""Tests for the standalone worker entry point."""

import asyncio
from unittest.mock import AsyncMock

from src.autopr.context import ServiceContext
from src.autopr.events.emitter import NullEventEmitter
from src.autopr.jobs import DirectSubmission, JobState
from src.autopr.pipeline.models import JobOutcome
from src.autopr.worker import run_worker


def test_worker_drains_queue_until_stopped(settings_factory, tmp_path):
    settings = settings_factory(
        run_embedded_workers=False, sandbox_base_path=str(tmp_path / "sandboxes")
    )
    processor = AsyncMock()
    processor.process.return_value = JobOutcome(
        pr_url="https://github.com/acme/widget/pull/3", pr_number=3
    )
    context = ServiceContext(
        settings,
        github_client=AsyncMock(),
        processor=processor,
        event_emitter=NullEventEmitter(),
    )

    async def scenario():
        stop = asyncio.Event()
        worker = asyncio.create_task(run_worker(settings, context=context, stop_event=stop))
        await asyncio.sleep(0.05)
        job = await context.queue.enqueue(
            DirectSubmission(repo_url="https://github.com/acme/widget", task="Add a LICENSE")
        )
        for _ in range(200):
            current = await context.queue.get(job.id)
            if current.state == JobState.COMPLETED:
                break
            await asyncio.sleep(0.02)
        stop.set()
        await worker
        return current

    job = asyncio.run(scenario())

    assert job.state == JobState.COMPLETED
    assert job.result.pr_number == 3
    assert context.worker_pool.running is False
    context.github_client.close.assert_awaited_once()
