"""Per-job sandbox directories and command execution."""

from src.autopr.sandbox.models import (
    CommandFailedError,
    CommandResult,
    Sandbox,
    SandboxConfig,
    SandboxError,
)
from src.autopr.sandbox.service import LocalSandboxService

__all__ = [
    "CommandFailedError",
    "CommandResult",
    "LocalSandboxService",
    "Sandbox",
    "SandboxConfig",
    "SandboxError",
]
