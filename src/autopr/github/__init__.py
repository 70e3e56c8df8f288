"""GitHub API access: forks, pull requests, repository metadata."""

from src.autopr.github.client import GitHubAPIError, GitHubClient, RateLimitError
from src.autopr.github.models import (
    ForkReference,
    InvalidRepositoryURLError,
    PullRequestRef,
    RepoCoordinates,
    parse_repo_url,
)

__all__ = [
    "ForkReference",
    "GitHubAPIError",
    "GitHubClient",
    "InvalidRepositoryURLError",
    "PullRequestRef",
    "RateLimitError",
    "RepoCoordinates",
    "parse_repo_url",
]
