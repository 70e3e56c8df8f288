"""GitHub webhook signature verification and ingestion."""

from src.autopr.webhook.handler import WebhookIngestor, strip_ref
from src.autopr.webhook.models import (
    Ack,
    EnqueueRequest,
    IngestOutcome,
    Rejection,
    WebhookEventType,
)
from src.autopr.webhook.signature import (
    SignatureVerifier,
    compute_signature,
    verify_signature,
)

__all__ = [
    "Ack",
    "EnqueueRequest",
    "IngestOutcome",
    "Rejection",
    "SignatureVerifier",
    "WebhookEventType",
    "WebhookIngestor",
    "compute_signature",
    "strip_ref",
    "verify_signature",
]
