"""Job queue, storage backends and the worker pool."""

from src.autopr.jobs.models import (
    DirectSubmission,
    Job,
    JobInput,
    JobKind,
    JobResult,
    JobState,
    WebhookPullRequestInput,
    WebhookPushInput,
    is_terminal_state,
    is_valid_transition,
    parse_job_input,
)
from src.autopr.jobs.errors import (
    InvalidProgressError,
    InvalidTransitionError,
    JobNotFoundError,
    QueueError,
)
from src.autopr.jobs.store import InMemoryJobStore, JobStore, PostgresJobStore
from src.autopr.jobs.queue import JobQueue, job_project_id
from src.autopr.jobs.worker import JobRunner, WorkerPool

__all__ = [
    "DirectSubmission",
    "InMemoryJobStore",
    "InvalidProgressError",
    "InvalidTransitionError",
    "Job",
    "JobInput",
    "JobKind",
    "JobNotFoundError",
    "JobQueue",
    "JobResult",
    "JobRunner",
    "JobState",
    "JobStore",
    "PostgresJobStore",
    "QueueError",
    "WebhookPullRequestInput",
    "WebhookPushInput",
    "WorkerPool",
    "is_terminal_state",
    "is_valid_transition",
    "job_project_id",
    "parse_job_input",
]
