"""Sandbox data models and exceptions."""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class SandboxConfig:
    """Configuration for local sandboxes.

    Attributes:
        base_path: Directory under which one sandbox directory per project
            is created.
        retention_days: Age after which a leftover sandbox directory is
            removed by the startup sweep.
        command_timeout_seconds: Per-command limit; None leaves commands
            unbounded.
    """

    base_path: Path
    retention_days: int = 1
    command_timeout_seconds: Optional[int] = None


@dataclass
class Sandbox:
    """An isolated working area owned by exactly one job.

    Attributes:
        project_id: Identifier the sandbox was created for (``job-<id>``).
        root: Directory holding everything the job writes.
        created_at: Unix timestamp of creation.
    """

    project_id: str
    root: Path
    created_at: float = field(default_factory=time.time)

    @property
    def repo_path(self) -> Path:
        """Where the job's repository is cloned."""
        return self.root / "repo"


@dataclass
class CommandResult:
    """Outcome of one command run inside a sandbox.

    Attributes:
        command: The command as run (shell string or joined argv).
        exit_code: Process exit code (-1 for timeout).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
    """

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SandboxError(Exception):
    """Raised when a sandbox cannot be created, read or written."""


class CommandFailedError(SandboxError):
    """Raised when a command inside a sandbox exits non-zero or times out."""

    def __init__(self, result: CommandResult):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        message = f"Command {result.command!r} exited with {result.exit_code}"
        if detail:
            message = f"{message}: {detail[:500]}"
        super().__init__(message)
