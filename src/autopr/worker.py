"""Standalone worker process.

Runs the worker pool without the HTTP API. Point it at the same Postgres
queue as the API process (AUTOPR_QUEUE_BACKEND=postgres) and set
AUTOPR_RUN_EMBEDDED_WORKERS=false on the API to split the roles.

Run with ``python -m src.autopr.worker``.
"""

import asyncio
import signal
from typing import Optional

import structlog

from src.autopr.config import AutoPRSettings, get_settings
from src.autopr.context import ServiceContext
from src.autopr.logging_config import configure_logging

logger = structlog.get_logger()


async def run_worker(
    settings: AutoPRSettings,
    context: Optional[ServiceContext] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Start the pool and run until ``stop_event`` is set or a signal arrives."""
    context = context or ServiceContext(settings)
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available off the main thread or on some platforms
            pass

    if settings.queue_backend == "memory":
        logger.warning(
            "Standalone worker is using the in-memory queue; "
            "it will only see jobs it enqueues itself"
        )

    await context.start(run_workers=True)
    logger.info("Worker started", concurrency=settings.worker_concurrency)

    try:
        await stop_event.wait()
    finally:
        logger.info("Worker shutting down; waiting for in-flight jobs")
        await context.close()
        logger.info("Worker stopped")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
