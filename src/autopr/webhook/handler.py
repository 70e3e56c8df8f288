"""GitHub webhook ingestion.

Turns a raw webhook delivery into one of three outcomes: a job to
enqueue, an acknowledgement, or a rejection. The signature is checked
over the exact bytes received before the body is parsed.

GitHub payload fields used (push):
{
  "ref": "refs/heads/main",
  "repository": {"id": 1, "name": "widget", "full_name": "acme/widget",
                 "html_url": "https://github.com/acme/widget",
                 "owner": {"login": "acme"}},
  "pusher": {"name": "octocat"},
  "commits": [...],
  "head_commit": {"message": "Add a LICENSE file"}
}

GitHub payload fields used (pull_request):
{
  "action": "opened",
  "number": 7,
  "pull_request": {"number": 7, "title": "...", "head": {"ref": "feature"}},
  "repository": {...}
}
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import ValidationError

from src.autopr.jobs.models import WebhookPullRequestInput, WebhookPushInput
from src.autopr.webhook.models import (
    Ack,
    EnqueueRequest,
    IngestOutcome,
    Rejection,
    WebhookEventType,
)
from src.autopr.webhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"

ENQUEUE_PR_ACTIONS = frozenset({"opened", "synchronize"})

_REF_PREFIXES = ("refs/heads/", "refs/tags/")


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and Starlette headers."""
    value = headers.get(name)
    if value is not None:
        return value
    for key, candidate in headers.items():
        if key.lower() == name:
            return candidate
    return None


def strip_ref(ref: str) -> str:
    """Strip the refs/heads/ or refs/tags/ prefix from a git ref."""
    for prefix in _REF_PREFIXES:
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


class RepositoryInfo:
    """Repository coordinates extracted from a payload."""

    def __init__(self, owner: str, name: str, repo_url: str, repo_id: Optional[int]):
        self.owner = owner
        self.name = name
        self.repo_url = repo_url
        self.repo_id = repo_id

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class WebhookIngestor:
    """Authenticates and classifies GitHub webhook deliveries.

    The ingestor has no side effects: it never enqueues itself, it only
    says what should be enqueued.

    Attributes:
        verifier: Checks the X-Hub-Signature-256 header.

    Example:
        >>> ingestor = WebhookIngestor(SignatureVerifier("s3cret"))
        >>> outcome = ingestor.ingest(raw_body, request.headers)
        >>> isinstance(outcome, EnqueueRequest)
        True
    """

    def __init__(self, verifier: SignatureVerifier) -> None:
        self.verifier = verifier

    def ingest(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: Optional[str] = None,
    ) -> IngestOutcome:
        """Authenticate, parse and classify one delivery.

        Args:
            raw_body: The exact request body bytes.
            headers: Request headers.
            source_ip: Client address, for logging rejected deliveries.

        Returns:
            EnqueueRequest, Ack or Rejection.
        """
        delivery_id = _header(headers, DELIVERY_HEADER)

        if not self.verifier.verify(raw_body, _header(headers, SIGNATURE_HEADER)):
            logger.warning(
                "Rejected webhook with invalid signature",
                extra={"source_ip": source_ip, "delivery_id": delivery_id},
            )
            return Rejection(
                status_code=403,
                error="Forbidden",
                code="INVALID_SIGNATURE",
                message="Invalid webhook signature",
            )

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(
                "Rejected webhook with unparseable body",
                extra={"delivery_id": delivery_id, "error": str(e)},
            )
            return self._invalid_payload("Body is not valid JSON")

        if not isinstance(payload, dict):
            return self._invalid_payload("Body must be a JSON object")

        event = WebhookEventType.from_header(_header(headers, EVENT_HEADER))
        logger.info(
            "Webhook received",
            extra={"event": event.value, "delivery_id": delivery_id},
        )

        if event == WebhookEventType.PING:
            return Ack(event=event, message="pong")
        if event == WebhookEventType.PUSH:
            return self._handle_push(payload, delivery_id)
        if event == WebhookEventType.PULL_REQUEST:
            return self._handle_pull_request(payload, delivery_id)
        if event == WebhookEventType.REPOSITORY:
            return Ack(event=event, message="Repository event acknowledged")
        return Ack(event=event, message="Event type not handled")

    def _handle_push(
        self, payload: Dict[str, Any], delivery_id: Optional[str]
    ) -> IngestOutcome:
        repository = self._extract_repository(payload)
        if repository is None:
            return self._missing_repository()

        ref = payload.get("ref")
        branch = strip_ref(ref) if isinstance(ref, str) and ref else None
        if not branch:
            return self._invalid_payload("Push payload has no ref")

        commits = payload.get("commits")
        head_commit = payload.get("head_commit")
        message = head_commit.get("message") if isinstance(head_commit, dict) else None
        task = message.strip() if isinstance(message, str) and message.strip() else None

        try:
            job_input = WebhookPushInput(
                project_id=repository.full_name,
                repo_url=repository.repo_url,
                repo_id=repository.repo_id,
                branch=branch,
                pusher=self._extract_login(payload.get("pusher"), "name"),
                commits=len(commits) if isinstance(commits, list) else 0,
                task=task or f"Process push to {branch}",
                delivery_id=delivery_id,
            )
        except ValidationError as e:
            return self._invalid_payload(f"Invalid push payload: {e.error_count()} errors")

        logger.info(
            "Push event accepted",
            extra={"project_id": job_input.project_id, "branch": branch},
        )
        return EnqueueRequest(event=WebhookEventType.PUSH, job_input=job_input)

    def _handle_pull_request(
        self, payload: Dict[str, Any], delivery_id: Optional[str]
    ) -> IngestOutcome:
        repository = self._extract_repository(payload)
        if repository is None:
            return self._missing_repository()

        action = payload.get("action")
        if action not in ENQUEUE_PR_ACTIONS:
            logger.debug("Ignoring pull_request action: %s", action)
            return Ack(
                event=WebhookEventType.PULL_REQUEST,
                message=f"Pull request action '{action}' acknowledged",
            )

        pull_request = payload.get("pull_request")
        if not isinstance(pull_request, dict):
            return self._invalid_payload("Pull request payload has no pull_request")

        number, head_ref = self._extract_pr_coordinates(payload, pull_request)
        if number is None or not head_ref:
            return self._invalid_payload("Pull request payload has no number or head ref")

        title = pull_request.get("title")
        task = title.strip() if isinstance(title, str) and title.strip() else None

        try:
            job_input = WebhookPullRequestInput(
                project_id=f"{repository.full_name}/pr-{number}",
                repo_url=repository.repo_url,
                repo_id=repository.repo_id,
                branch=head_ref,
                pr_number=number,
                action=action,
                task=task or f"Process pull request #{number}",
                delivery_id=delivery_id,
            )
        except ValidationError as e:
            return self._invalid_payload(
                f"Invalid pull_request payload: {e.error_count()} errors"
            )

        logger.info(
            "Pull request event accepted",
            extra={"project_id": job_input.project_id, "action": action},
        )
        return EnqueueRequest(event=WebhookEventType.PULL_REQUEST, job_input=job_input)

    def _extract_repository(self, payload: Dict[str, Any]) -> Optional[RepositoryInfo]:
        """Extract owner, name, URL and id, or None if any is missing."""
        repo_data = payload.get("repository")
        if not isinstance(repo_data, dict):
            logger.warning("Missing or invalid 'repository' field in payload")
            return None

        full_name = repo_data.get("full_name")
        owner = self._extract_login(repo_data.get("owner"), "login", "name")
        name = repo_data.get("name")

        if (not owner or not isinstance(name, str) or not name) and isinstance(full_name, str):
            owner, _, name = full_name.partition("/")

        if not owner or not isinstance(name, str) or not name:
            logger.warning("Repository payload lacks owner or name")
            return None

        html_url = repo_data.get("html_url")
        repo_url = html_url if isinstance(html_url, str) and html_url else (
            f"https://github.com/{owner}/{name}"
        )
        repo_id = repo_data.get("id")

        return RepositoryInfo(
            owner=owner,
            name=name,
            repo_url=repo_url,
            repo_id=repo_id if isinstance(repo_id, int) else None,
        )

    @staticmethod
    def _extract_pr_coordinates(
        payload: Dict[str, Any], pull_request: Dict[str, Any]
    ) -> Tuple[Optional[int], Optional[str]]:
        number = pull_request.get("number", payload.get("number"))
        if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
            number = None

        head = pull_request.get("head")
        head_ref = head.get("ref") if isinstance(head, dict) else None
        if not isinstance(head_ref, str):
            head_ref = None
        return number, head_ref

    @staticmethod
    def _extract_login(user_data: Any, *keys: str) -> Optional[str]:
        """Return the first non-empty string among ``keys`` of a user object."""
        if not isinstance(user_data, dict):
            return None
        for key in keys:
            value = user_data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    @staticmethod
    def _missing_repository() -> Rejection:
        return Rejection(
            status_code=400,
            error="Bad Request",
            code="MISSING_REPOSITORY",
            message="Missing repository information",
        )

    @staticmethod
    def _invalid_payload(message: str) -> Rejection:
        return Rejection(
            status_code=400,
            error="Bad Request",
            code="INVALID_PAYLOAD",
            message=message,
        )
