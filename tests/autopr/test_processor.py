"""Unit tests for the JobProcessor.

Verifies the stage sequence by mocking every collaborator and asserting
the calls, the progress checkpoints and the sandbox release on success
and on each failure path.
"""

import asyncio
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from src.autopr.codegen.models import CodeGeneration, FileAction, FileOperation
from src.autopr.github.models import ForkReference, PullRequestRef
from src.autopr.helpers import BRANCH_PREFIX
from src.autopr.jobs.models import (
    DirectSubmission,
    Job,
    WebhookPullRequestInput,
    WebhookPushInput,
)
from src.autopr.pipeline import JobProcessor, PipelineStage, PipelineStageError
from src.autopr.sandbox.models import Sandbox


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_job(job_input=None) -> Job:
    return Job(
        id="job123",
        sequence=1,
        input=job_input
        or DirectSubmission(
            repo_url="https://github.com/acme/widget",
            task="Add a LICENSE file with the MIT license",
        ),
    )


def _make_generation(shell_commands: Optional[List[str]] = None) -> CodeGeneration:
    return CodeGeneration(
        file_operations=[
            FileOperation(action=FileAction.CREATE, path="LICENSE", content="MIT License\n")
        ],
        shell_commands=shell_commands or [],
        explanation="Adds the MIT license.",
    )


class Collaborators:
    """AsyncMock collaborators with happy-path return values."""

    def __init__(self, generation: Optional[CodeGeneration] = None):
        self.sandbox = Sandbox(project_id="job-job123", root=Path("/sandboxes/job-job123"))
        self.repo_path = self.sandbox.repo_path

        self.forks = AsyncMock()
        self.forks.ensure_fork.return_value = ForkReference(
            fork_url="https://github.com/autopr-bot/widget.git",
            fork_owner="autopr-bot",
            fork_name="widget",
        )
        self.forks.create_pull_request.return_value = PullRequestRef(
            pr_url="https://github.com/acme/widget/pull/12", pr_number=12
        )

        self.sandboxes = AsyncMock()
        self.sandboxes.get_or_create_sandbox.return_value = self.sandbox
        self.sandboxes.get_file_contents.return_value = {"README.md": "# widget\n"}
        self.sandboxes.get_file_tree.return_value = ["README.md", "src/widget.py"]
        self.sandboxes.cleanup.return_value = True

        self.git = AsyncMock()
        self.git.clone_repository.return_value = self.repo_path
        self.git.checkout_branch.return_value = True
        self.git.commit_and_push.return_value = "abc123"

        self.generator = AsyncMock()
        self.generator.find_relevant_files.return_value = ["README.md"]
        self.generator.select_files_to_modify.return_value = ["README.md"]
        self.generator.generate_code_changes.return_value = generation or _make_generation()

    def processor(self) -> JobProcessor:
        return JobProcessor(
            forks=self.forks,
            sandboxes=self.sandboxes,
            git=self.git,
            generator=self.generator,
            github_token="ghp_test",
        )


class ProgressRecorder:
    def __init__(self):
        self.values: List[int] = []

    async def __call__(self, progress: int) -> None:
        self.values.append(progress)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestHappyPath:
    def test_opens_pull_request_and_reports_all_checkpoints(self):
        collaborators = Collaborators()
        progress = ProgressRecorder()

        outcome = run_async(collaborators.processor().process(_make_job(), progress))

        assert outcome.success is True
        assert outcome.pr_url == "https://github.com/acme/widget/pull/12"
        assert outcome.pr_number == 12
        assert progress.values == [10, 20, 30, 40, 60, 70, 80, 90, 100]

    def test_collaborators_called_with_stage_inputs(self):
        collaborators = Collaborators()

        run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        collaborators.forks.ensure_fork.assert_awaited_once_with(
            "https://github.com/acme/widget"
        )
        collaborators.sandboxes.get_or_create_sandbox.assert_awaited_once_with("job-job123")
        collaborators.git.clone_repository.assert_awaited_once_with(
            collaborators.sandbox, "https://github.com/autopr-bot/widget.git"
        )
        collaborators.git.checkout_branch.assert_not_awaited()
        collaborators.generator.find_relevant_files.assert_awaited_once_with(
            collaborators.sandbox,
            collaborators.repo_path,
            ["license", "file", "mit"],
        )
        collaborators.sandboxes.get_file_contents.assert_awaited_once_with(
            collaborators.sandbox, collaborators.repo_path, ["README.md"]
        )

        generate_args = collaborators.generator.generate_code_changes.await_args.args
        assert generate_args[0] == "https://github.com/acme/widget"
        assert generate_args[2] == {"README.md": "# widget\n"}
        assert generate_args[4] == ["README.md", "src/widget.py"]
        assert generate_args[5] == ["license", "file", "mit"]

        collaborators.sandboxes.execute_file_operations.assert_awaited_once()
        collaborators.sandboxes.run_shell_commands.assert_not_awaited()

    def test_commit_and_pull_request_use_same_fresh_branch(self):
        collaborators = Collaborators()

        run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        commit_args = collaborators.git.commit_and_push.await_args.args
        branch = commit_args[2]
        assert branch.startswith(BRANCH_PREFIX)
        assert commit_args[3] == "feat: Add a LICENSE file with the MIT license"
        assert commit_args[4] == "https://github.com/autopr-bot/widget.git"
        assert commit_args[5] == "ghp_test"

        pr_call = collaborators.forks.create_pull_request.await_args
        assert pr_call.args == ("https://github.com/acme/widget", "autopr-bot", branch)
        assert pr_call.kwargs["title"] == "Add a LICENSE file with the MIT license"
        assert pr_call.kwargs["body"] == "Adds the MIT license."
        assert pr_call.kwargs["base"] is None

    def test_shell_commands_run_when_generated(self):
        collaborators = Collaborators(_make_generation(shell_commands=["npm install"]))

        run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        collaborators.sandboxes.run_shell_commands.assert_awaited_once_with(
            collaborators.sandbox, ["npm install"], collaborators.repo_path
        )

    def test_webhook_job_checks_out_and_targets_its_upstream_branch(self):
        collaborators = Collaborators()
        job = _make_job(
            WebhookPushInput(
                project_id="acme/widget",
                repo_url="https://github.com/acme/widget",
                branch="develop",
                task="Fix the build",
            )
        )

        run_async(collaborators.processor().process(job, ProgressRecorder()))

        collaborators.git.clone_repository.assert_awaited_once_with(
            collaborators.sandbox, "https://github.com/autopr-bot/widget.git"
        )
        collaborators.git.checkout_branch.assert_awaited_once_with(
            collaborators.sandbox,
            collaborators.repo_path,
            "https://github.com/acme/widget",
            "develop",
        )
        assert collaborators.forks.create_pull_request.await_args.kwargs["base"] == "develop"

    def test_branch_missing_upstream_falls_back_to_default_branch(self):
        collaborators = Collaborators()
        collaborators.git.checkout_branch.return_value = False
        job = _make_job(
            WebhookPullRequestInput(
                project_id="acme/widget",
                repo_url="https://github.com/acme/widget",
                branch="contributor-feature",
                pr_number=7,
                action="opened",
                task="Fix the typo",
            )
        )
        progress = ProgressRecorder()

        outcome = run_async(collaborators.processor().process(job, progress))

        assert outcome.success is True
        assert progress.values == [10, 20, 30, 40, 60, 70, 80, 90, 100]
        assert collaborators.forks.create_pull_request.await_args.kwargs["base"] is None

    def test_sandbox_released_exactly_once(self):
        collaborators = Collaborators()

        run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        collaborators.sandboxes.cleanup.assert_awaited_once_with("job-job123")


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


FAILURE_POINTS = [
    ("forks", "ensure_fork", PipelineStage.FORKING, []),
    ("sandboxes", "get_or_create_sandbox", PipelineStage.SANDBOXING, [10]),
    ("git", "clone_repository", PipelineStage.CLONING, [10, 20]),
    ("generator", "find_relevant_files", PipelineStage.FINDING_FILES, [10, 20, 30]),
    ("generator", "select_files_to_modify", PipelineStage.SELECTING_FILES, [10, 20, 30, 40]),
    ("sandboxes", "get_file_contents", PipelineStage.READING_CONTEXT, [10, 20, 30, 40]),
    ("generator", "generate_code_changes", PipelineStage.GENERATING, [10, 20, 30, 40, 60]),
    (
        "sandboxes",
        "execute_file_operations",
        PipelineStage.APPLYING_OPERATIONS,
        [10, 20, 30, 40, 60, 70],
    ),
    ("git", "commit_and_push", PipelineStage.COMMITTING, [10, 20, 30, 40, 60, 70, 80]),
    (
        "forks",
        "create_pull_request",
        PipelineStage.OPENING_PR,
        [10, 20, 30, 40, 60, 70, 80, 90],
    ),
]


class TestFailurePaths:
    @pytest.mark.parametrize("owner,method,stage,expected_progress", FAILURE_POINTS)
    def test_failure_names_stage_keeps_progress_and_releases_sandbox(
        self, owner, method, stage, expected_progress
    ):
        collaborators = Collaborators()
        cause = RuntimeError("collaborator exploded")
        getattr(getattr(collaborators, owner), method).side_effect = cause
        progress = ProgressRecorder()

        with pytest.raises(PipelineStageError) as exc_info:
            run_async(collaborators.processor().process(_make_job(), progress))

        error = exc_info.value
        assert error.stage == stage
        assert error.__cause__ is cause
        assert str(error) == f"{stage.value}: collaborator exploded"
        assert progress.values == expected_progress
        collaborators.sandboxes.cleanup.assert_awaited_once_with("job-job123")

    def test_clone_failure_scenario(self):
        collaborators = Collaborators()
        collaborators.git.clone_repository.side_effect = RuntimeError("repository not found")
        progress = ProgressRecorder()

        with pytest.raises(PipelineStageError) as exc_info:
            run_async(collaborators.processor().process(_make_job(), progress))

        assert str(exc_info.value) == "cloning: repository not found"
        assert progress.values[-1] == 20
        collaborators.generator.find_relevant_files.assert_not_awaited()
        collaborators.sandboxes.cleanup.assert_awaited_once()

    def test_shell_command_failure_is_running_commands_stage(self):
        collaborators = Collaborators(_make_generation(shell_commands=["make test"]))
        collaborators.sandboxes.run_shell_commands.side_effect = RuntimeError("exit 2")

        with pytest.raises(PipelineStageError) as exc_info:
            run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        assert exc_info.value.stage == PipelineStage.RUNNING_COMMANDS

    def test_cleanup_failure_does_not_mask_stage_error(self):
        collaborators = Collaborators()
        collaborators.git.clone_repository.side_effect = RuntimeError("repository not found")
        collaborators.sandboxes.cleanup.side_effect = OSError("device busy")

        with pytest.raises(PipelineStageError) as exc_info:
            run_async(collaborators.processor().process(_make_job(), ProgressRecorder()))

        assert exc_info.value.stage == PipelineStage.CLONING
        collaborators.sandboxes.cleanup.assert_awaited_once()

    def test_cleanup_failure_after_success_still_completes(self):
        collaborators = Collaborators()
        collaborators.sandboxes.cleanup.side_effect = OSError("device busy")
        progress = ProgressRecorder()

        outcome = run_async(collaborators.processor().process(_make_job(), progress))

        assert outcome.pr_number == 12
        assert progress.values[-1] == 100

    def test_progress_reporter_failure_is_not_retried(self):
        collaborators = Collaborators()

        async def failing_reporter(progress: int) -> None:
            raise RuntimeError("store unavailable")

        with pytest.raises(RuntimeError):
            run_async(collaborators.processor().process(_make_job(), failing_reporter))

        collaborators.forks.ensure_fork.assert_awaited_once()
        collaborators.sandboxes.cleanup.assert_awaited_once()
