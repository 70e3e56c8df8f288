"""GitHub REST client for forks and pull requests.

This module provides an async wrapper around the GitHub API for:
- Forking an upstream repository into the acting identity's account
- Opening pull requests from a fork branch against the upstream
- Reading repository metadata and file contents

Transient failures (408, 429, 5xx, timeouts and transport errors) are
retried with exponential backoff and full jitter; an exhausted rate limit
raises RateLimitError instead of sleeping until reset.
"""

import asyncio
import base64
import logging
import random
import time
from typing import Any, Dict, Optional

import httpx

from src.autopr.github.models import (
    ForkReference,
    PullRequestRef,
    parse_repo_url,
)


logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """A GitHub request failed; ``status_code`` is None when no response arrived."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """The rate limit is exhausted until ``reset_at`` (unix seconds)."""

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class GitHubClient:
    """Async GitHub API client acting as a single identity.

    Implements the fork service used by the pipeline: ``ensure_fork`` and
    ``create_pull_request``. Works against github.com and GitHub
    Enterprise Server (via ``base_url``).

    Attributes:
        token: Access token of the acting identity.
        base_url: Base URL for the GitHub API.
        max_retries: Maximum retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.
        fork_poll_attempts: How many times to check a new fork is ready.
        fork_poll_delay: Seconds between fork readiness checks.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     fork = await client.ensure_fork("https://github.com/acme/widget")
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        fork_poll_attempts: int = 10,
        fork_poll_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.fork_poll_attempts = fork_poll_attempts
        self.fork_poll_delay = fork_poll_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """The underlying httpx client, created on first use."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                    "User-Agent": "autopr/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Full-jitter exponential backoff for retry ``attempt`` (0-indexed)."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = _int_header(response.headers, "x-ratelimit-reset")
        retry_after = _int_header(response.headers, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": _int_header(response.headers, "x-ratelimit-limit"),
            },
        )
        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and _int_header(response.headers, "x-ratelimit-remaining") == 0
        )

    async def _backoff(self, attempt: int, reason: str, path: str) -> None:
        delay = self._calculate_backoff(attempt)
        logger.warning(
            "Retrying GitHub API request",
            extra={
                "reason": reason,
                "attempt": attempt + 1,
                "max_retries": self.max_retries,
                "delay": delay,
                "path": path,
            },
        )
        await asyncio.sleep(delay)

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        Raises:
            RateLimitError: If the rate limit is exhausted.
            GitHubAPIError: On any other 4xx/5xx, or when retries run out.
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            can_retry = attempt < self.max_retries
            try:
                response = await self.client.request(
                    method, path, json=json_data, params=params
                )
            except httpx.RequestError as e:
                # TimeoutException is a RequestError subclass
                last_error = e
                if can_retry:
                    await self._backoff(attempt, type(e).__name__, path)
                    continue
                break

            if self._is_rate_limited(response):
                raise self._rate_limit_error(response)

            if response.status_code in self.RETRYABLE_STATUS_CODES and can_retry:
                await self._backoff(attempt, f"HTTP {response.status_code}", path)
                continue

            if response.status_code >= 400:
                body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "method": method,
                        "path": path,
                        "response_body": body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error {response.status_code} on {method} {path}",
                    status_code=response.status_code,
                    response_body=body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed after all retries",
            extra={"method": method, "path": path, "last_error": str(last_error)},
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_error}",
            request_url=f"{self.base_url}{path}",
        )

    async def get_authenticated_user(self) -> Dict[str, Any]:
        """Return the profile of the acting identity."""
        response = await self._request("GET", "/user")
        return response.json()

    async def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        """Return repository metadata (including ``default_branch``)."""
        response = await self._request("GET", f"/repos/{owner}/{repo}")
        return response.json()

    async def get_contents(
        self,
        owner: str,
        repo: str,
        path: str,
        ref: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return a file's metadata with its decoded text under ``"text"``.

        Directory listings are returned unchanged (as ``{"entries": [...]}``).
        """
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{path.lstrip('/')}",
            params={"ref": ref} if ref else None,
        )
        data = response.json()
        if isinstance(data, list):
            return {"entries": data}
        if data.get("encoding") == "base64" and data.get("content") is not None:
            data["text"] = base64.b64decode(data["content"]).decode(
                "utf-8", errors="replace"
            )
        return data

    async def ensure_fork(self, repo_url: str) -> ForkReference:
        """Fork ``repo_url`` into the acting identity's account.

        GitHub answers with the existing fork when one already exists, so
        this is safe to call for every job. Forks are created
        asynchronously; the fork is polled until it is readable.

        Raises:
            InvalidRepositoryURLError: If the URL cannot be parsed.
            GitHubAPIError: If forking fails or the fork never appears.
        """
        upstream = parse_repo_url(repo_url)

        logger.info("Ensuring fork", extra={"repository": upstream.full_name})
        response = await self._request(
            "POST", f"/repos/{upstream.owner}/{upstream.name}/forks", json_data={}
        )
        fork = ForkReference.from_github_response(response.json())

        await self._wait_for_fork(fork)
        logger.info(
            "Fork ready",
            extra={
                "repository": upstream.full_name,
                "fork_owner": fork.fork_owner,
                "fork_url": fork.fork_url,
            },
        )
        return fork

    async def _wait_for_fork(self, fork: ForkReference) -> None:
        for attempt in range(self.fork_poll_attempts):
            try:
                await self.get_repository(fork.fork_owner, fork.fork_name)
                return
            except GitHubAPIError as e:
                if e.status_code != 404:
                    raise
            if attempt + 1 < self.fork_poll_attempts:
                await asyncio.sleep(self.fork_poll_delay)

        raise GitHubAPIError(
            message=(
                f"Fork {fork.fork_owner}/{fork.fork_name} not ready after "
                f"{self.fork_poll_attempts} checks"
            ),
            status_code=404,
        )

    async def create_pull_request(
        self,
        repo_url: str,
        fork_owner: str,
        branch: str,
        title: str,
        body: str,
        base: Optional[str] = None,
    ) -> PullRequestRef:
        """Open a PR from ``fork_owner:branch`` against the upstream.

        Args:
            repo_url: URL of the upstream repository.
            fork_owner: Login owning the fork that holds ``branch``.
            branch: Head branch pushed to the fork.
            title: PR title.
            body: PR description.
            base: Base branch; the upstream default branch when None.

        Returns:
            The opened pull request.
        """
        upstream = parse_repo_url(repo_url)
        if base is None:
            metadata = await self.get_repository(upstream.owner, upstream.name)
            base = metadata.get("default_branch") or "main"

        logger.info(
            "Creating pull request",
            extra={
                "repository": upstream.full_name,
                "head": f"{fork_owner}:{branch}",
                "base": base,
            },
        )
        response = await self._request(
            "POST",
            f"/repos/{upstream.owner}/{upstream.name}/pulls",
            json_data={
                "title": title,
                "body": body,
                "head": f"{fork_owner}:{branch}",
                "base": base,
                "maintainer_can_modify": True,
            },
        )
        pr = PullRequestRef.from_github_response(response.json())

        logger.info(
            "Pull request created",
            extra={
                "repository": upstream.full_name,
                "pr_number": pr.pr_number,
                "pr_url": pr.pr_url,
            },
        )
        return pr

    async def health_check(self) -> bool:
        """Return True if the token is valid and the API reachable."""
        try:
            response = await self.client.get("/user")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning("GitHub API health check failed", extra={"error": str(e)})
            return False
