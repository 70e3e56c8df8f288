"""Job processor: the task-to-pull-request pipeline.

Drives one active job through strictly sequential stages:
fork → sandbox → clone → find files → select files → read context →
generate → apply operations → run commands → commit and push → open PR →
clean up.

Progress checkpoints are recorded after each checkpointed stage succeeds,
so a failing job keeps the last checkpoint it actually reached. The
sandbox release is registered before the first stage and runs exactly
once on every exit path; a failing release is logged, never raised.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from src.autopr.helpers import extract_keywords, generate_branch_name, sandbox_project_id
from src.autopr.jobs.models import Job
from src.autopr.pipeline.collaborators import (
    CodeGenerationService,
    ForkService,
    GitOperations,
    SandboxService,
)
from src.autopr.pipeline.errors import CleanupError, PipelineStageError
from src.autopr.pipeline.models import (
    STAGE_CHECKPOINTS,
    JobOutcome,
    PipelineStage,
    ProgressReporter,
)

logger = logging.getLogger(__name__)

COMMIT_MESSAGE_PREFIX = "feat: "


class JobProcessor:
    """Runs one job through the pipeline using injected collaborators.

    Attributes:
        forks: Forks repositories and opens pull requests.
        sandboxes: Creates, reads, writes and releases sandboxes.
        git: Clones, commits and pushes.
        generator: Finds relevant files and generates the change.
        github_token: Token used to push to the fork.
    """

    def __init__(
        self,
        forks: ForkService,
        sandboxes: SandboxService,
        git: GitOperations,
        generator: CodeGenerationService,
        github_token: Optional[str] = None,
    ):
        self.forks = forks
        self.sandboxes = sandboxes
        self.git = git
        self.generator = generator
        self.github_token = github_token

    async def process(
        self, job: Job, report_progress: ProgressReporter
    ) -> JobOutcome:
        """Turn ``job`` into an opened pull request.

        Args:
            job: The active job.
            report_progress: Records a checkpoint on the job.

        Returns:
            JobOutcome with the PR URL and number.

        Raises:
            PipelineStageError: If any stage fails; its message names the
                stage and the cause is chained.
        """
        repo_url = job.input.repo_url
        task = job.input.task
        base_branch = job.input.target_branch
        project_id = sandbox_project_id(job.id)

        logger.info(
            "Processing job",
            extra={"job_id": job.id, "repo_url": repo_url, "task": task[:100]},
        )

        async def checkpoint(stage: PipelineStage) -> None:
            progress = STAGE_CHECKPOINTS.get(stage)
            if progress is not None:
                await report_progress(progress)

        async with self._sandbox_lease(job.id, project_id):
            async with self._stage(job.id, PipelineStage.FORKING):
                fork = await self.forks.ensure_fork(repo_url)
            await checkpoint(PipelineStage.FORKING)

            async with self._stage(job.id, PipelineStage.SANDBOXING):
                sandbox = await self.sandboxes.get_or_create_sandbox(project_id)
            await checkpoint(PipelineStage.SANDBOXING)

            async with self._stage(job.id, PipelineStage.CLONING):
                repo_path = await self.git.clone_repository(sandbox, fork.fork_url)
                # The fork may predate the branch, or the branch may live on
                # a contributor's fork; then the default branch is used
                if base_branch and not await self.git.checkout_branch(
                    sandbox, repo_path, repo_url, base_branch
                ):
                    logger.warning(
                        "Branch not on upstream, using the default branch",
                        extra={"job_id": job.id, "branch": base_branch},
                    )
                    base_branch = None
            await checkpoint(PipelineStage.CLONING)

            keywords = extract_keywords(task)
            async with self._stage(job.id, PipelineStage.FINDING_FILES):
                relevant_files = await self.generator.find_relevant_files(
                    sandbox, repo_path, keywords
                )
            await checkpoint(PipelineStage.FINDING_FILES)

            async with self._stage(job.id, PipelineStage.SELECTING_FILES):
                files_to_modify = await self.generator.select_files_to_modify(
                    sandbox, task, relevant_files
                )

            async with self._stage(job.id, PipelineStage.READING_CONTEXT):
                file_contents = await self.sandboxes.get_file_contents(
                    sandbox, repo_path, files_to_modify
                )
                all_files = await self.sandboxes.get_file_tree(sandbox, repo_path)
            await checkpoint(PipelineStage.READING_CONTEXT)

            async with self._stage(job.id, PipelineStage.GENERATING):
                generation = await self.generator.generate_code_changes(
                    repo_url,
                    task,
                    file_contents,
                    relevant_files,
                    all_files,
                    keywords,
                )
            await checkpoint(PipelineStage.GENERATING)

            async with self._stage(job.id, PipelineStage.APPLYING_OPERATIONS):
                await self.sandboxes.execute_file_operations(
                    sandbox, generation.file_operations, repo_path
                )
            await checkpoint(PipelineStage.APPLYING_OPERATIONS)

            if generation.shell_commands:
                async with self._stage(job.id, PipelineStage.RUNNING_COMMANDS):
                    await self.sandboxes.run_shell_commands(
                        sandbox, generation.shell_commands, repo_path
                    )

            async with self._stage(job.id, PipelineStage.COMMITTING):
                branch = generate_branch_name()
                await self.git.commit_and_push(
                    sandbox,
                    repo_path,
                    branch,
                    f"{COMMIT_MESSAGE_PREFIX}{task}",
                    fork.fork_url,
                    self.github_token,
                )
            await checkpoint(PipelineStage.COMMITTING)

            async with self._stage(job.id, PipelineStage.OPENING_PR):
                pr = await self.forks.create_pull_request(
                    repo_url,
                    fork.fork_owner,
                    branch,
                    title=task,
                    body=generation.explanation,
                    base=base_branch,
                )

        await checkpoint(PipelineStage.CLEANING_UP)

        logger.info(
            "Job processed",
            extra={"job_id": job.id, "pr_url": pr.pr_url, "pr_number": pr.pr_number},
        )
        return JobOutcome(success=True, pr_url=pr.pr_url, pr_number=pr.pr_number)

    @asynccontextmanager
    async def _stage(self, job_id: str, stage: PipelineStage) -> AsyncIterator[None]:
        """Run a stage body, wrapping any failure in PipelineStageError."""
        logger.info(
            "Running stage",
            extra={"job_id": job_id, "stage": stage.value, "step": stage.step},
        )
        try:
            yield
        except PipelineStageError:
            raise
        except Exception as exc:
            logger.warning(
                "Stage failed",
                extra={"job_id": job_id, "stage": stage.value, "error": str(exc)},
            )
            raise PipelineStageError(stage, exc) from exc

    @asynccontextmanager
    async def _sandbox_lease(self, job_id: str, project_id: str) -> AsyncIterator[None]:
        """Release the job's sandbox exactly once when the body exits."""
        try:
            yield
        finally:
            await self._release_sandbox(job_id, project_id)

    async def _release_sandbox(self, job_id: str, project_id: str) -> None:
        logger.info(
            "Running stage",
            extra={
                "job_id": job_id,
                "stage": PipelineStage.CLEANING_UP.value,
                "step": PipelineStage.CLEANING_UP.step,
            },
        )
        try:
            await self.sandboxes.cleanup(project_id)
        except Exception as exc:
            error = CleanupError(project_id, exc)
            logger.error(
                str(error),
                exc_info=exc,
                extra={"job_id": job_id, "project_id": project_id},
            )
