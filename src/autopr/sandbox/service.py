"""Local sandbox service.

Each job gets a directory under the configured base path. Everything the
job does (clone, file operations, commands) happens inside that
directory, and the directory is removed when the job releases it.
Commands run as asyncio subprocesses so workers never block the loop.
"""

import asyncio
import logging
import os
import shutil
import time
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional, Sequence

from src.autopr.codegen.models import FileAction, FileOperation
from src.autopr.sandbox.models import (
    CommandFailedError,
    CommandResult,
    Sandbox,
    SandboxConfig,
    SandboxError,
)

logger = logging.getLogger(__name__)

SANDBOX_DIR_PERMISSIONS = 0o755

# Directories never listed in a file tree
IGNORED_DIRECTORIES = frozenset(
    {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".tox"}
)

# Files larger than this are not handed to the generator
MAX_CONTEXT_FILE_BYTES = 200_000

# The only service environment variables sandbox commands inherit
PASSTHROUGH_ENV_VARS = (
    "PATH",
    "LANG",
    "LC_ALL",
    "TZ",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


class LocalSandboxService:
    """Creates, uses and removes per-job sandbox directories.

    Attributes:
        config: Base path, retention and command timeout settings.
    """

    def __init__(self, config: SandboxConfig):
        self.config = config
        self._sandboxes: Dict[str, Sandbox] = {}

    async def get_or_create_sandbox(self, project_id: str) -> Sandbox:
        """Return the sandbox for ``project_id``, creating it if needed.

        Raises:
            SandboxError: If the directory cannot be created.
        """
        existing = self._sandboxes.get(project_id)
        if existing is not None and existing.root.exists():
            return existing

        root = self._sandbox_path(project_id)
        try:
            root.mkdir(parents=True, exist_ok=True)
            root.chmod(SANDBOX_DIR_PERMISSIONS)
        except OSError as exc:
            raise SandboxError(f"Failed to create sandbox at {root}: {exc}") from exc

        sandbox = Sandbox(project_id=project_id, root=root)
        self._sandboxes[project_id] = sandbox
        logger.info(
            "Sandbox ready", extra={"project_id": project_id, "path": str(root)}
        )
        return sandbox

    async def cleanup(self, project_id: str) -> bool:
        """Remove the sandbox for ``project_id``.

        Releasing an unknown or already-released sandbox is a no-op.

        Returns:
            True if a directory was removed.

        Raises:
            SandboxError: If the directory exists but cannot be removed.
        """
        self._sandboxes.pop(project_id, None)
        root = self._sandbox_path(project_id)
        if not root.exists():
            return False

        try:
            await asyncio.to_thread(shutil.rmtree, root)
        except OSError as exc:
            raise SandboxError(f"Failed to remove sandbox {root}: {exc}") from exc

        logger.info("Sandbox removed", extra={"project_id": project_id})
        return True

    async def cleanup_stale_sandboxes(self) -> int:
        """Remove sandbox directories older than the retention period.

        Sandboxes held by this process are skipped.

        Returns:
            Number of directories removed.
        """
        base_path = self.config.base_path
        if not base_path.exists():
            return 0

        threshold = time.time() - self.config.retention_days * 86400
        in_use = {sandbox.root for sandbox in self._sandboxes.values()}
        removed = 0

        for entry in base_path.iterdir():
            if not entry.is_dir() or entry in in_use:
                continue
            if entry.stat().st_mtime >= threshold:
                continue
            try:
                await asyncio.to_thread(shutil.rmtree, entry)
                removed += 1
            except OSError:
                logger.exception(
                    "Failed to remove stale sandbox", extra={"path": str(entry)}
                )

        logger.info("Stale sandbox sweep complete", extra={"removed_count": removed})
        return removed

    async def get_file_tree(self, sandbox: Sandbox, repo_path: Path) -> List[str]:
        """List every file in the repository as sorted POSIX relative paths."""
        root = self._require_inside(sandbox, repo_path)
        return await asyncio.to_thread(self._walk_files, root)

    @staticmethod
    def _walk_files(root: Path) -> List[str]:
        files: List[str] = []
        for directory, subdirectories, filenames in os.walk(root):
            subdirectories[:] = [
                name for name in subdirectories if name not in IGNORED_DIRECTORIES
            ]
            for filename in filenames:
                relative = Path(directory, filename).relative_to(root)
                files.append(relative.as_posix())
        return sorted(files)

    async def get_file_contents(
        self,
        sandbox: Sandbox,
        repo_path: Path,
        files: Sequence[str],
    ) -> Dict[str, str]:
        """Read ``files`` (repository-relative) as text.

        Missing, oversized, non-regular and escaping files are skipped with
        a warning.
        """
        root = self._require_inside(sandbox, repo_path)
        contents: Dict[str, str] = {}

        for relative in files:
            try:
                target = self._resolve(root, relative)
            except SandboxError:
                logger.warning(
                    "Skipping file outside the repository",
                    extra={"project_id": sandbox.project_id, "file": relative},
                )
                continue
            if not target.is_file():
                logger.warning(
                    "Skipping unreadable file",
                    extra={"project_id": sandbox.project_id, "file": relative},
                )
                continue
            if target.stat().st_size > MAX_CONTEXT_FILE_BYTES:
                logger.warning(
                    "Skipping oversized file",
                    extra={"project_id": sandbox.project_id, "file": relative},
                )
                continue
            contents[relative] = target.read_text(encoding="utf-8", errors="replace")

        return contents

    async def execute_file_operations(
        self,
        sandbox: Sandbox,
        operations: Sequence[FileOperation],
        repo_path: Path,
    ) -> None:
        """Apply ``operations`` to the repository, in order.

        Raises:
            SandboxError: If a path escapes the repository, a deleted file
                does not exist, or a write fails.
        """
        root = self._require_inside(sandbox, repo_path)

        for operation in operations:
            target = self._resolve(root, operation.path)
            try:
                if operation.action == FileAction.DELETE:
                    if not target.exists():
                        raise SandboxError(f"Cannot delete missing file {operation.path}")
                    target.unlink()
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_text(operation.content or "", encoding="utf-8")
            except OSError as exc:
                raise SandboxError(
                    f"Failed to {operation.action.value} {operation.path}: {exc}"
                ) from exc

            logger.info(
                "Applied file operation",
                extra={
                    "project_id": sandbox.project_id,
                    "action": operation.action.value,
                    "file": operation.path,
                },
            )

    async def run_shell_commands(
        self,
        sandbox: Sandbox,
        commands: Sequence[str],
        repo_path: Path,
    ) -> List[CommandResult]:
        """Run shell ``commands`` in the repository, in order.

        Raises:
            CommandFailedError: On the first command that exits non-zero;
                later commands are not run.
        """
        cwd = self._require_inside(sandbox, repo_path)
        results: List[CommandResult] = []

        for command in commands:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(cwd),
                env=self._command_env(sandbox),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            result = await self._communicate(process, command)
            results.append(result)
            if not result.success:
                raise CommandFailedError(result)

        return results

    async def run_command(
        self,
        sandbox: Sandbox,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        display: Optional[str] = None,
    ) -> CommandResult:
        """Run an argv command inside the sandbox.

        Args:
            sandbox: Sandbox to run in.
            args: Program and arguments.
            cwd: Working directory; the sandbox root when None.
            env: Extra environment variables.
            display: Text used for the command in logs and errors, for
                argv that carries credentials.

        Raises:
            CommandFailedError: If the command exits non-zero or times out.
            SandboxError: If the program cannot be started.
        """
        working_dir = self._require_inside(sandbox, cwd or sandbox.root)
        command_text = display or " ".join(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(working_dir),
                env=self._command_env(sandbox, env),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SandboxError(f"Failed to execute {args[0]}: {exc}") from exc

        result = await self._communicate(process, command_text)
        if not result.success:
            raise CommandFailedError(result)
        return result

    async def _communicate(
        self, process: asyncio.subprocess.Process, command: str
    ) -> CommandResult:
        started = time.monotonic()
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(
                command=command,
                exit_code=-1,
                stdout="",
                stderr=f"Timed out after {self.config.command_timeout_seconds}s",
                duration_seconds=time.monotonic() - started,
            )

        result = CommandResult(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - started,
        )
        logger.debug(
            "Command finished",
            extra={
                "command": command,
                "exit_code": result.exit_code,
                "duration": round(result.duration_seconds, 3),
            },
        )
        return result

    def _sandbox_path(self, project_id: str) -> Path:
        safe_name = project_id.replace("/", "_").replace("..", "_")
        return self.config.base_path / safe_name

    def _require_inside(self, sandbox: Sandbox, path: Path) -> Path:
        resolved = Path(path).resolve()
        if not resolved.is_relative_to(sandbox.root.resolve()):
            raise SandboxError(f"{path} is outside sandbox {sandbox.project_id}")
        return resolved

    @staticmethod
    def _resolve(root: Path, relative: str) -> Path:
        """Resolve a repository-relative path, rejecting escapes.

        Symlinks are followed, so a link in the clone that points outside
        ``root`` is an escape as well.
        """
        pure = PurePosixPath(relative)
        if pure.is_absolute() or ".." in pure.parts:
            raise SandboxError(f"Path {relative!r} escapes the repository")
        candidate = root.joinpath(*pure.parts)
        if not candidate.resolve().is_relative_to(root.resolve()):
            raise SandboxError(f"Path {relative!r} escapes the repository")
        return candidate

    @staticmethod
    def _command_env(
        sandbox: Sandbox, extra: Optional[Mapping[str, str]] = None
    ) -> Dict[str, str]:
        """Environment for sandbox subprocesses.

        Only PASSTHROUGH_ENV_VARS are copied from the service; HOME is the
        sandbox root so no user config or credentials are picked up.
        """
        env = {name: os.environ[name] for name in PASSTHROUGH_ENV_VARS if name in os.environ}
        env.setdefault("PATH", DEFAULT_PATH)
        env["HOME"] = str(sandbox.root)
        env.update(extra or {})
        return env
