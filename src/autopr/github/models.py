"""GitHub data models.

Repository URLs arrive in several shapes (``https://github.com/o/r``,
``https://github.com/o/r.git``, ``git@github.com:o/r.git``); they are
normalized into RepoCoordinates before any API call.
"""

import re
from typing import Any, Dict

from pydantic import BaseModel, Field


class InvalidRepositoryURLError(ValueError):
    """Raised when a repository URL does not name an owner and repository."""


_HTTP_URL = re.compile(r"^https?://[^/]+/(?P<owner>[^/\s]+)/(?P<name>[^/\s]+?)(?:\.git)?/?$")
_SSH_URL = re.compile(r"^git@[^:]+:(?P<owner>[^/\s]+)/(?P<name>[^/\s]+?)(?:\.git)?$")


class RepoCoordinates(BaseModel):
    """Owner and name of a repository."""

    owner: str = Field(..., min_length=1)

    name: str = Field(..., min_length=1)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def parse_repo_url(repo_url: str) -> RepoCoordinates:
    """Extract owner and repository name from a repository URL.

    Example:
        >>> parse_repo_url("https://github.com/acme/widget.git").full_name
        'acme/widget'

    Raises:
        InvalidRepositoryURLError: If the URL does not match a known shape.
    """
    candidate = (repo_url or "").strip()
    for pattern in (_HTTP_URL, _SSH_URL):
        match = pattern.match(candidate)
        if match:
            return RepoCoordinates(owner=match["owner"], name=match["name"])
    raise InvalidRepositoryURLError(f"Invalid repository URL: {repo_url!r}")


class ForkReference(BaseModel):
    """The acting identity's fork of an upstream repository.

    Attributes:
        fork_url: HTTPS clone URL of the fork.
        fork_owner: Login that owns the fork.
        fork_name: Repository name of the fork.
        default_branch: Default branch of the fork.
    """

    fork_url: str = Field(..., min_length=1)

    fork_owner: str = Field(..., min_length=1)

    fork_name: str = Field(..., min_length=1)

    default_branch: str = Field(default="main")

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "ForkReference":
        """Build from a ``POST /repos/{o}/{r}/forks`` response."""
        return cls(
            fork_url=data.get("clone_url") or f"{data['html_url']}.git",
            fork_owner=data["owner"]["login"],
            fork_name=data["name"],
            default_branch=data.get("default_branch") or "main",
        )


class PullRequestRef(BaseModel):
    """An opened pull request."""

    pr_url: str = Field(..., min_length=1)

    pr_number: int = Field(..., gt=0)

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequestRef":
        """Build from a ``POST /repos/{o}/{r}/pulls`` response."""
        return cls(pr_url=data["html_url"], pr_number=data["number"])
