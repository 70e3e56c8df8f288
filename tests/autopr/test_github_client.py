"""Tests for the GitHub client.

Requests are served by an httpx.MockTransport so the retry, rate-limit,
fork and pull request logic run against canned GitHub responses.
"""

import asyncio
import base64
import json
from typing import Callable, List

import httpx
import pytest

from src.autopr.github import (
    ForkReference,
    GitHubAPIError,
    GitHubClient,
    InvalidRepositoryURLError,
    PullRequestRef,
    RateLimitError,
    parse_repo_url,
)


def run_async(coro):
    return asyncio.run(coro)


FORK_RESPONSE = {
    "name": "widget",
    "full_name": "autopr-bot/widget",
    "owner": {"login": "autopr-bot"},
    "html_url": "https://github.com/autopr-bot/widget",
    "clone_url": "https://github.com/autopr-bot/widget.git",
    "default_branch": "main",
}


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GitHubClient:
    options = {"base_delay": 0, "max_delay": 0, "fork_poll_delay": 0}
    options.update(kwargs)
    return GitHubClient(token="ghp_test", transport=httpx.MockTransport(handler), **options)


class TestParseRepoUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://github.com/acme/widget",
            "https://github.com/acme/widget.git",
            "https://github.com/acme/widget/",
            "http://ghe.example.com/acme/widget",
            "git@github.com:acme/widget.git",
        ],
    )
    def test_supported_shapes(self, url):
        coordinates = parse_repo_url(url)

        assert coordinates.owner == "acme"
        assert coordinates.name == "widget"
        assert coordinates.full_name == "acme/widget"

    @pytest.mark.parametrize(
        "url", ["", "https://github.com/acme", "not a url", "https://github.com/a/b/c"]
    )
    def test_invalid_urls(self, url):
        with pytest.raises(InvalidRepositoryURLError):
            parse_repo_url(url)


class TestModels:
    def test_fork_reference_falls_back_to_html_url(self):
        data = dict(FORK_RESPONSE)
        del data["clone_url"]

        fork = ForkReference.from_github_response(data)

        assert fork.fork_url == "https://github.com/autopr-bot/widget.git"
        assert fork.fork_owner == "autopr-bot"

    def test_pull_request_ref(self):
        pr = PullRequestRef.from_github_response(
            {"html_url": "https://github.com/acme/widget/pull/3", "number": 3}
        )

        assert pr.pr_number == 3


class TestEnsureFork:
    def test_forks_and_waits_until_fork_is_readable(self):
        calls: List[str] = []
        probes = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(f"{request.method} {request.url.path}")
            if request.method == "POST":
                assert request.headers["authorization"] == "Bearer ghp_test"
                return httpx.Response(202, json=FORK_RESPONSE)
            probes["count"] += 1
            if probes["count"] < 3:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=FORK_RESPONSE)

        fork = run_async(_client(handler).ensure_fork("https://github.com/acme/widget"))

        assert fork.fork_url == "https://github.com/autopr-bot/widget.git"
        assert fork.fork_owner == "autopr-bot"
        assert calls[0] == "POST /repos/acme/widget/forks"
        assert calls[1:] == ["GET /repos/autopr-bot/widget"] * 3

    def test_fork_never_ready(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(202, json=FORK_RESPONSE)
            return httpx.Response(404, json={"message": "Not Found"})

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(_client(handler, fork_poll_attempts=2).ensure_fork("https://github.com/acme/widget"))

        assert "not ready" in str(exc_info.value)

    def test_missing_repository_fails(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "Not Found"})

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(_client(handler).ensure_fork("https://github.com/acme/missing"))

        assert exc_info.value.status_code == 404


class TestCreatePullRequest:
    def test_uses_upstream_default_branch_when_no_base(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                assert request.url.path == "/repos/acme/widget"
                return httpx.Response(200, json={"default_branch": "trunk"})
            bodies.append(json.loads(request.content))
            return httpx.Response(
                201, json={"html_url": "https://github.com/acme/widget/pull/12", "number": 12}
            )

        pr = run_async(
            _client(handler).create_pull_request(
                "https://github.com/acme/widget",
                "autopr-bot",
                "autopr/abc",
                title="Add a LICENSE file",
                body="Adds the MIT license.",
            )
        )

        assert pr.pr_number == 12
        assert bodies[0]["head"] == "autopr-bot:autopr/abc"
        assert bodies[0]["base"] == "trunk"
        assert bodies[0]["title"] == "Add a LICENSE file"

    def test_explicit_base_skips_lookup(self):
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(
                201, json={"html_url": "https://github.com/acme/widget/pull/5", "number": 5}
            )

        run_async(
            _client(handler).create_pull_request(
                "https://github.com/acme/widget", "autopr-bot", "b", "t", "d", base="develop"
            )
        )

        assert methods == ["POST"]


class TestRetries:
    def test_retries_server_errors_then_succeeds(self):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            if attempts["count"] < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"login": "autopr-bot"})

        user = run_async(_client(handler).get_authenticated_user())

        assert user["login"] == "autopr-bot"
        assert attempts["count"] == 3

    def test_gives_up_after_max_retries(self):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            return httpx.Response(503)

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(_client(handler, max_retries=2).get_authenticated_user())

        assert attempts["count"] == 3
        assert exc_info.value.status_code == 503

    def test_transport_errors_are_retried(self):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"login": "autopr-bot"})

        assert run_async(_client(handler).get_authenticated_user())["login"] == "autopr-bot"
        assert attempts["count"] == 2

    def test_client_errors_are_not_retried(self):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["count"] += 1
            return httpx.Response(422, json={"message": "Validation Failed"})

        with pytest.raises(GitHubAPIError):
            run_async(_client(handler).get_authenticated_user())

        assert attempts["count"] == 1

    def test_exhausted_rate_limit_raises_immediately(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"},
                json={"message": "API rate limit exceeded"},
            )

        with pytest.raises(RateLimitError) as exc_info:
            run_async(_client(handler).get_authenticated_user())

        assert exc_info.value.reset_at == 1700000000

    def test_backoff_is_capped(self):
        client = GitHubClient(token="t", base_delay=1.0, max_delay=5.0)

        for attempt in range(10):
            assert 0 <= client._calculate_backoff(attempt) <= 5.0


class TestContents:
    def test_decodes_base64_content(self):
        encoded = base64.b64encode(b"MIT License\n").decode()

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/repos/acme/widget/contents/LICENSE"
            assert request.url.params["ref"] == "main"
            return httpx.Response(200, json={"encoding": "base64", "content": encoded})

        data = run_async(_client(handler).get_contents("acme", "widget", "LICENSE", ref="main"))

        assert data["text"] == "MIT License\n"

    def test_directory_listing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"name": "README.md"}])

        data = run_async(_client(handler).get_contents("acme", "widget", "/"))

        assert data == {"entries": [{"name": "README.md"}]}


class TestHealthCheck:
    def test_healthy(self):
        client = _client(lambda request: httpx.Response(200, json={"login": "x"}))
        assert run_async(client.health_check()) is True

    def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        assert run_async(_client(handler).health_check()) is False
