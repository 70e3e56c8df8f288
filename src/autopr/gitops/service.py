"""Git operations inside a sandbox.

Clones the fork into the sandbox, then commits the generated changes on a
fresh branch and pushes it back to the fork. All commands go through the
sandbox service so they run inside the job's directory. The access token
is embedded in remote URLs only for the command itself; logs and errors
see the redacted URL.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from src.autopr.sandbox.models import CommandFailedError, Sandbox
from src.autopr.sandbox.service import LocalSandboxService

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_NAME = "autopr-bot"
DEFAULT_AUTHOR_EMAIL = "autopr-bot@users.noreply.github.com"

# Never let git wait for interactive credentials
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class GitCommandError(Exception):
    """Raised when a git command fails.

    Attributes:
        command: The redacted command line.
        exit_code: Process exit code.
        stderr: Captured standard error (redacted).
    """

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"{command} failed with exit code {exit_code}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()[:500]}"
        super().__init__(message)


class NothingToCommitError(GitCommandError):
    """Raised when the working tree has no changes to commit."""

    def __init__(self) -> None:
        super().__init__("git commit", 1, "nothing to commit, working tree clean")


def authenticated_url(url: str, token: Optional[str]) -> str:
    """Embed ``token`` as basic-auth credentials in an HTTPS remote URL."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(
        (parts.scheme, f"x-access-token:{token}@{host}", parts.path, parts.query, parts.fragment)
    )


def redact(text: str, token: Optional[str]) -> str:
    """Replace every occurrence of ``token`` in ``text``."""
    if not token:
        return text
    return text.replace(token, "***")


class GitService:
    """Clones, commits and pushes through a sandbox.

    Attributes:
        sandboxes: Sandbox service used to run git.
        token: Access token for private clones and pushes.
        author_name: Commit author and committer name.
        author_email: Commit author and committer email.
    """

    def __init__(
        self,
        sandboxes: LocalSandboxService,
        token: Optional[str] = None,
        author_name: str = DEFAULT_AUTHOR_NAME,
        author_email: str = DEFAULT_AUTHOR_EMAIL,
    ):
        self.sandboxes = sandboxes
        self.token = token
        self.author_name = author_name
        self.author_email = author_email

    async def clone_repository(
        self,
        sandbox: Sandbox,
        repo_url: str,
        branch: Optional[str] = None,
    ) -> Path:
        """Shallow-clone ``repo_url`` into the sandbox.

        Args:
            sandbox: Sandbox to clone into.
            repo_url: HTTPS clone URL (the fork).
            branch: Branch to check out; the remote default when None.

        Returns:
            Path of the working tree.

        Raises:
            GitCommandError: If the clone fails.
        """
        repo_path = sandbox.repo_path
        args = ["git", "clone", "--depth", "1"]
        if branch:
            args += ["--branch", branch]
        args += [authenticated_url(repo_url, self.token), str(repo_path)]

        await self._git(sandbox, args, cwd=sandbox.root)
        logger.info(
            "Repository cloned",
            extra={
                "project_id": sandbox.project_id,
                "repo_url": repo_url,
                "branch": branch,
            },
        )
        return repo_path

    async def checkout_branch(
        self,
        sandbox: Sandbox,
        repo_path: Path,
        source_url: str,
        branch: str,
    ) -> bool:
        """Check out ``branch`` as it is on ``source_url`` (the upstream).

        A fork only carries the branches that existed when it was made, so
        webhook branches are fetched from the upstream into the fork's
        clone.

        Returns:
            False if the upstream has no such branch; the working tree is
            left on the clone's default branch.

        Raises:
            GitCommandError: If the fetched branch cannot be checked out.
        """
        try:
            await self._git(
                sandbox,
                [
                    "git",
                    "fetch",
                    "--depth", "1",
                    authenticated_url(source_url, self.token),
                    f"refs/heads/{branch}",
                ],
                cwd=repo_path,
            )
        except GitCommandError as exc:
            logger.warning(
                "Branch not fetched from upstream",
                extra={
                    "project_id": sandbox.project_id,
                    "branch": branch,
                    "error": exc.stderr.strip()[:200],
                },
            )
            return False

        await self._git(
            sandbox, ["git", "checkout", "-B", branch, "FETCH_HEAD"], cwd=repo_path
        )
        logger.info(
            "Upstream branch checked out",
            extra={"project_id": sandbox.project_id, "branch": branch},
        )
        return True

    async def commit_and_push(
        self,
        sandbox: Sandbox,
        repo_path: Path,
        branch: str,
        message: str,
        remote_url: str,
        token: Optional[str] = None,
    ) -> str:
        """Commit every change in the working tree to ``branch`` and push it.

        Args:
            sandbox: Sandbox holding the working tree.
            repo_path: The working tree.
            branch: New branch name.
            message: Commit message.
            remote_url: HTTPS URL of the fork to push to.
            token: Token for the push; the service token when None.

        Returns:
            SHA of the pushed commit.

        Raises:
            NothingToCommitError: If the working tree is clean.
            GitCommandError: If any git command fails.
        """
        push_token = token or self.token

        await self._git(sandbox, ["git", "checkout", "-b", branch], cwd=repo_path)
        await self._git(sandbox, ["git", "add", "--all"], cwd=repo_path)

        status = await self._git(
            sandbox, ["git", "status", "--porcelain"], cwd=repo_path
        )
        if not status.strip():
            raise NothingToCommitError()

        await self._git(
            sandbox,
            [
                "git",
                "-c", f"user.name={self.author_name}",
                "-c", f"user.email={self.author_email}",
                "commit", "-m", message,
            ],
            cwd=repo_path,
        )
        await self._git(
            sandbox,
            [
                "git",
                "push",
                authenticated_url(remote_url, push_token),
                f"HEAD:refs/heads/{branch}",
            ],
            cwd=repo_path,
            token=push_token,
        )
        sha = (await self._git(sandbox, ["git", "rev-parse", "HEAD"], cwd=repo_path)).strip()

        logger.info(
            "Branch pushed",
            extra={"project_id": sandbox.project_id, "branch": branch, "commit": sha},
        )
        return sha

    async def _git(
        self,
        sandbox: Sandbox,
        args: Sequence[str],
        cwd: Path,
        token: Optional[str] = None,
    ) -> str:
        secret = token or self.token
        display = redact(" ".join(args), secret)
        try:
            result = await self.sandboxes.run_command(
                sandbox, args, cwd=cwd, env=_GIT_ENV, display=display
            )
        except CommandFailedError as exc:
            raise GitCommandError(
                display, exc.result.exit_code, redact(exc.result.stderr, secret)
            ) from exc
        return result.stdout
