"""Webhook ingestion models.

This module defines:
- WebhookEventType: Classification of the X-GitHub-Event header
- EnqueueRequest / Ack / Rejection: The three outcomes of ingesting a
  delivery, which the HTTP layer maps to responses
"""

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field

from src.autopr.jobs.models import WebhookPullRequestInput, WebhookPushInput


class WebhookEventType(str, Enum):
    """GitHub event types the ingestor distinguishes.

    Any absent or unknown X-GitHub-Event header classifies as OTHER.
    """

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    PING = "ping"
    REPOSITORY = "repository"
    OTHER = "other"

    @classmethod
    def from_header(cls, value: Optional[str]) -> "WebhookEventType":
        if not value:
            return cls.OTHER
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OTHER


class EnqueueRequest(BaseModel):
    """The delivery should become a job."""

    event: WebhookEventType

    job_input: Union[WebhookPushInput, WebhookPullRequestInput] = Field(
        ..., discriminator="kind"
    )


class Ack(BaseModel):
    """The delivery is valid but produces no job."""

    event: WebhookEventType

    message: str


class Rejection(BaseModel):
    """The delivery is refused.

    Attributes:
        status_code: HTTP status to answer with (403 or 400).
        error: Short error title.
        code: Machine-readable error code.
        message: Human-readable explanation.
    """

    status_code: int = Field(..., ge=400, le=499)

    error: str

    code: str

    message: str


IngestOutcome = Union[EnqueueRequest, Ack, Rejection]
