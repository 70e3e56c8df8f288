"""Service wiring.

ServiceContext is built once per process from AutoPRSettings. It owns
every long-lived collaborator (job store, queue, worker pool, GitHub
client, sandbox service, session machinery) and orders their startup and
shutdown. Tests pass pre-built collaborators as keyword overrides.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from src.autopr.auth.sessions import InMemorySessionStore, SessionStore
from src.autopr.auth.tokens import SessionTokenManager
from src.autopr.codegen.generator import LLMCodeGenerator
from src.autopr.config import AutoPRSettings
from src.autopr.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from src.autopr.github.client import GitHubClient
from src.autopr.gitops.service import GitService
from src.autopr.jobs.queue import JobQueue
from src.autopr.jobs.store import InMemoryJobStore, JobStore, PostgresJobStore
from src.autopr.jobs.worker import JobRunner, WorkerPool
from src.autopr.pipeline.collaborators import (
    CodeGenerationService,
    GitOperations,
    SandboxService,
)
from src.autopr.pipeline.processor import JobProcessor
from src.autopr.sandbox.models import SandboxConfig
from src.autopr.sandbox.service import LocalSandboxService
from src.autopr.webhook.handler import WebhookIngestor
from src.autopr.webhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)


def create_job_store(settings: AutoPRSettings) -> JobStore:
    """Select the job store backend named by ``queue_backend``."""
    if settings.queue_backend == "postgres":
        return PostgresJobStore(settings.database_url)
    return InMemoryJobStore()


class ServiceContext:
    """Process-wide collaborators, constructed once.

    Attributes:
        settings: Validated configuration.
        store: Job persistence backend.
        queue: The job queue.
        processor: The pipeline run by workers.
        worker_pool: Workers draining the queue.
        ingestor: Authenticates and classifies webhook deliveries.
        tokens: Issues and verifies session tokens.
        sessions: Session storage.
        event_emitter: Sink for job events (logs and metrics).
    """

    def __init__(
        self,
        settings: AutoPRSettings,
        *,
        job_store: Optional[JobStore] = None,
        github_client: Optional[GitHubClient] = None,
        sandboxes: Optional[SandboxService] = None,
        git: Optional[GitOperations] = None,
        generator: Optional[CodeGenerationService] = None,
        processor: Optional[JobRunner] = None,
        event_emitter: Optional[EventEmitter] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.settings = settings
        self.event_emitter = event_emitter or create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS]
        )

        self.store = job_store if job_store is not None else create_job_store(settings)
        self.queue = JobQueue(self.store, event_emitter=self.event_emitter)

        self.github_client = github_client or GitHubClient(
            token=settings.github_token,
            base_url=settings.github_base_url,
        )

        if sandboxes is None:
            sandboxes = LocalSandboxService(
                SandboxConfig(
                    base_path=Path(settings.sandbox_base_path),
                    retention_days=settings.sandbox_retention_days,
                    command_timeout_seconds=settings.command_timeout_seconds,
                )
            )
        self.sandboxes = sandboxes

        self.processor = processor or JobProcessor(
            forks=self.github_client,
            sandboxes=self.sandboxes,
            git=git or GitService(self.sandboxes, token=settings.github_token),
            generator=generator
            or LLMCodeGenerator(
                self.sandboxes,
                llm_url=settings.llm_url,
                model_name=settings.llm_model,
                api_key=settings.llm_api_key,
                max_relevant_files=settings.max_relevant_files,
            ),
            github_token=settings.github_token,
        )

        self.worker_pool = WorkerPool(
            self.queue,
            self.processor,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.worker_poll_interval_seconds,
            event_emitter=self.event_emitter,
        )

        self.ingestor = WebhookIngestor(SignatureVerifier(settings.github_webhook_secret))
        self.tokens = SessionTokenManager(
            settings.session_secret, expire_days=settings.session_expire_days
        )
        self.sessions = session_store or InMemorySessionStore(
            ttl=timedelta(days=settings.session_expire_days)
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, run_workers: Optional[bool] = None) -> None:
        """Connect the store, sweep stale sandboxes and start workers.

        Args:
            run_workers: Override ``run_embedded_workers``.
        """
        if self._started:
            return

        await self.store.connect()

        sweep = getattr(self.sandboxes, "cleanup_stale_sandboxes", None)
        if sweep is not None:
            try:
                removed = await sweep()
                if removed:
                    logger.info("Removed stale sandboxes", extra={"count": removed})
            except OSError as e:
                logger.warning("Stale sandbox sweep failed: %s", e)

        if self.settings.run_embedded_workers if run_workers is None else run_workers:
            await self.worker_pool.start()

        self._started = True
        logger.info(
            "Service context started",
            extra={
                "queue_backend": self.settings.queue_backend,
                "workers": self.worker_pool.running,
            },
        )

    async def close(self) -> None:
        """Stop workers, then release clients and the store."""
        await self.worker_pool.stop()
        await self.github_client.close()
        await self.event_emitter.close()
        await self.store.close()
        self._started = False
        logger.info("Service context closed")
