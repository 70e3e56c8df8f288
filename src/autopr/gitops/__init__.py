"""Git clone, commit and push inside sandboxes."""

from src.autopr.gitops.service import (
    GitCommandError,
    GitService,
    NothingToCommitError,
    authenticated_url,
    redact,
)

__all__ = [
    "GitCommandError",
    "GitService",
    "NothingToCommitError",
    "authenticated_url",
    "redact",
]
