"""Pipeline event models for observability.

This module defines the data models for job events, including:
- EventType: Enum of all event types emitted while jobs move through the
  queue and the pipeline
- PipelineEvent: Structured event with all required metadata

Events feed logging and metrics; they are never part of the control flow.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted for a job.

    Attributes:
        STATE_TRANSITION: Job moved between queue states (waiting, active,
            completed, failed). Details carry ``from_state`` and ``to_state``.
        PROGRESS: Job reached a pipeline checkpoint. Details carry
            ``progress``.
        ERROR: Job failed. Details carry ``error_message``, ``error_type``
            and ``stage``.
        COMPLETION: Job opened its pull request. Details carry ``pr_url``,
            ``pr_number`` and ``duration_seconds``.
    """

    STATE_TRANSITION = "state_transition"
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETION = "completion"


class PipelineEvent(BaseModel):
    """Structured event emitted for a job.

    Attributes:
        event_type: The category of event.
        job_id: Identifier of the job the event belongs to.
        project_id: Project the job works on: ``owner/repo`` (plus
            ``/pr-<n>``) for webhook jobs, ``job-<id>`` for direct ones.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = PipelineEvent(
        ...     event_type=EventType.STATE_TRANSITION,
        ...     job_id="5f0c...",
        ...     project_id="acme/widget",
        ...     details={"from_state": "waiting", "to_state": "active"},
        ... )
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    job_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the job",
    )

    project_id: str = Field(
        ...,
        min_length=1,
        description="Project the job works on",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> PipelineEvent(
            ...     event_type=EventType.ERROR,
            ...     job_id="abc",
            ...     project_id="acme/widget",
            ...     details={"error_message": "clone failed"},
            ... ).to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "job_id": self.job_id,
            "project_id": self.project_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
