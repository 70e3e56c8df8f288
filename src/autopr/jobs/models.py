"""Job models for the work queue.

This module defines the data models for queued jobs, including:
- JobState: Enum of job lifecycle states
- JobInput: Tagged union over the job kinds (direct submission, webhook
  push, webhook pull request), each with its own required fields
- Job: A job record as stored by the queue
- VALID_TRANSITIONS: Map defining allowed state transitions

Job states are monotonic: waiting → active → completed | failed, with no
backward transitions and no way out of a terminal state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class JobState(str, Enum):
    """Lifecycle states of a job.

    Attributes:
        WAITING: Enqueued, not yet claimed by a worker.
        ACTIVE: Claimed by exactly one worker and running through the pipeline.
        COMPLETED: Pipeline finished; a pull request was opened.
        FAILED: Pipeline stopped at a failing stage; terminal, never retried.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    """Discriminator values of the JobInput union."""

    DIRECT_SUBMISSION = "direct-submission"
    WEBHOOK_PUSH = "webhook-push"
    WEBHOOK_PULL_REQUEST = "webhook-pull-request"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def _require_http_url(value: str) -> str:
    value = _require_text(value, "repo_url")
    if not value.startswith(("http://", "https://")):
        raise ValueError("repo_url must start with http:// or https://")
    return value


class DirectSubmission(BaseModel):
    """Job submitted through the direct API.

    Attributes:
        kind: Always "direct-submission".
        repo_url: URL of the upstream repository to change.
        task: Natural-language description of the change.
    """

    kind: Literal["direct-submission"] = JobKind.DIRECT_SUBMISSION.value

    repo_url: str = Field(
        ...,
        description="URL of the upstream repository to change",
    )

    task: str = Field(
        ...,
        description="Natural-language description of the requested change",
    )

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: str) -> str:
        return _require_http_url(v)

    @field_validator("task")
    @classmethod
    def validate_task(cls, v: str) -> str:
        return _require_text(v, "task")

    @property
    def target_branch(self) -> Optional[str]:
        """Branch to clone and to open the PR against (repository default)."""
        return None


class _WebhookJobInput(BaseModel):
    """Fields shared by all webhook-derived jobs."""

    project_id: str = Field(..., min_length=1)

    repo_url: str = Field(...)

    repo_id: Optional[int] = Field(default=None)

    branch: str = Field(..., min_length=1)

    timestamp: datetime = Field(default_factory=_utcnow)

    trigger: Literal["webhook"] = "webhook"

    task: str = Field(...)

    delivery_id: Optional[str] = Field(
        default=None,
        description="X-GitHub-Delivery header of the originating delivery",
    )

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: str) -> str:
        return _require_http_url(v)

    @field_validator("task")
    @classmethod
    def validate_task(cls, v: str) -> str:
        return _require_text(v, "task")

    @property
    def target_branch(self) -> Optional[str]:
        return self.branch


class WebhookPushInput(_WebhookJobInput):
    """Job derived from a GitHub ``push`` delivery."""

    kind: Literal["webhook-push"] = JobKind.WEBHOOK_PUSH.value

    event: Literal["push"] = "push"

    pusher: Optional[str] = None

    commits: int = Field(default=0, ge=0)


class WebhookPullRequestInput(_WebhookJobInput):
    """Job derived from a GitHub ``pull_request`` delivery."""

    kind: Literal["webhook-pull-request"] = JobKind.WEBHOOK_PULL_REQUEST.value

    event: Literal["pull_request"] = "pull_request"

    pr_number: int = Field(..., gt=0)

    action: Literal["opened", "synchronize"]


JobInput = Annotated[
    Union[DirectSubmission, WebhookPushInput, WebhookPullRequestInput],
    Field(discriminator="kind"),
]

_JOB_INPUT_ADAPTER: TypeAdapter = TypeAdapter(JobInput)


def parse_job_input(data: Any) -> JobInput:
    """Validate raw data (dict or model) into one of the JobInput kinds.

    Raises:
        pydantic.ValidationError: If the kind is unknown or a required
            field of that kind is missing or invalid.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return _JOB_INPUT_ADAPTER.validate_python(data)


class JobResult(BaseModel):
    """Outcome stored on a completed job."""

    pr_url: str = Field(..., min_length=1)

    pr_number: int = Field(..., gt=0)


class Job(BaseModel):
    """A job record as held by the queue.

    Attributes:
        id: Opaque unique identifier assigned at enqueue time.
        sequence: Admission number; lower sequences are claimed first.
        input: The validated job input.
        state: Current lifecycle state.
        progress: Last checkpoint reached (0-100).
        result: PR reference, present only when completed.
        failure_reason: Human-readable cause, present only when failed.
        created_at: When the job was enqueued (UTC).
        started_at: When a worker claimed the job (UTC).
        finished_at: When the job reached a terminal state (UTC).
    """

    id: str = Field(..., min_length=1)

    sequence: int = Field(..., ge=0)

    input: JobInput

    state: JobState = JobState.WAITING

    progress: int = Field(default=0, ge=0, le=100)

    result: Optional[JobResult] = None

    failure_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)

    started_at: Optional[datetime] = None

    finished_at: Optional[datetime] = None

    @property
    def repo_url(self) -> str:
        return self.input.repo_url

    @property
    def task(self) -> str:
        return self.input.task

    def to_status_response(self) -> Dict[str, Any]:
        """Render the job in the status API shape.

        Returns:
            ``{jobId, state, progress, result?, failedReason?}``
        """
        response: Dict[str, Any] = {
            "jobId": self.id,
            "state": self.state.value,
            "progress": self.progress,
        }
        if self.result is not None:
            response["result"] = {
                "prUrl": self.result.pr_url,
                "prNumber": self.result.pr_number,
            }
        if self.failure_reason is not None:
            response["failedReason"] = self.failure_reason
        return response


VALID_TRANSITIONS: Dict[JobState, List[JobState]] = {
    JobState.WAITING: [JobState.ACTIVE],
    JobState.ACTIVE: [JobState.COMPLETED, JobState.FAILED],
    JobState.COMPLETED: [],
    JobState.FAILED: [],
}


def is_valid_transition(from_state: JobState, to_state: JobState) -> bool:
    """Check if a job state transition is allowed.

    Example:
        >>> is_valid_transition(JobState.WAITING, JobState.ACTIVE)
        True
        >>> is_valid_transition(JobState.FAILED, JobState.WAITING)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: JobState) -> bool:
    """Check if a state has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(state, [])) == 0
