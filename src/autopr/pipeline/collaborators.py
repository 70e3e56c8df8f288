"""Contracts of the services the job pipeline calls.

The default implementations are GitHubClient (forks), GitService (git),
LocalSandboxService (sandboxes) and LLMCodeGenerator (code generation);
tests substitute fakes that satisfy the same protocols.
"""

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from src.autopr.codegen.models import CodeGeneration, FileOperation
from src.autopr.github.models import ForkReference, PullRequestRef
from src.autopr.sandbox.models import CommandResult, Sandbox


class ForkService(Protocol):
    async def ensure_fork(self, repo_url: str) -> ForkReference:
        ...

    async def create_pull_request(
        self,
        repo_url: str,
        fork_owner: str,
        branch: str,
        title: str,
        body: str,
        base: Optional[str] = None,
    ) -> PullRequestRef:
        ...


class GitOperations(Protocol):
    async def clone_repository(
        self, sandbox: Sandbox, repo_url: str, branch: Optional[str] = None
    ) -> Path:
        ...

    async def checkout_branch(
        self, sandbox: Sandbox, repo_path: Path, source_url: str, branch: str
    ) -> bool:
        ...

    async def commit_and_push(
        self,
        sandbox: Sandbox,
        repo_path: Path,
        branch: str,
        message: str,
        remote_url: str,
        token: Optional[str] = None,
    ) -> str:
        ...


class SandboxService(Protocol):
    async def get_or_create_sandbox(self, project_id: str) -> Sandbox:
        ...

    async def get_file_contents(
        self, sandbox: Sandbox, repo_path: Path, files: Sequence[str]
    ) -> Dict[str, str]:
        ...

    async def get_file_tree(self, sandbox: Sandbox, repo_path: Path) -> List[str]:
        ...

    async def execute_file_operations(
        self, sandbox: Sandbox, operations: Sequence[FileOperation], repo_path: Path
    ) -> None:
        ...

    async def run_shell_commands(
        self, sandbox: Sandbox, commands: Sequence[str], repo_path: Path
    ) -> List[CommandResult]:
        ...

    async def cleanup(self, project_id: str) -> bool:
        ...


class CodeGenerationService(Protocol):
    async def find_relevant_files(
        self, sandbox: Sandbox, repo_path: Path, keywords: Sequence[str]
    ) -> List[str]:
        ...

    async def select_files_to_modify(
        self, sandbox: Sandbox, task: str, relevant_files: Sequence[str]
    ) -> List[str]:
        ...

    async def generate_code_changes(
        self,
        repo_url: str,
        task: str,
        file_contents: Dict[str, str],
        relevant_files: Sequence[str],
        all_files: Sequence[str],
        keywords: Sequence[str],
    ) -> CodeGeneration:
        ...
