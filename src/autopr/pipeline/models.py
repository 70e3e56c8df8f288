"""Pipeline stage models.

PipelineStage enumerates the strictly sequential stages of one job, and
STAGE_CHECKPOINTS maps a stage to the progress value recorded once that
stage has succeeded. Stages without a checkpoint leave progress alone.
"""

from enum import Enum
from typing import Awaitable, Callable, Dict

from pydantic import BaseModel, Field


class PipelineStage(str, Enum):
    """Stages of the job pipeline, in execution order."""

    FORKING = "forking"
    SANDBOXING = "sandboxing"
    CLONING = "cloning"
    FINDING_FILES = "finding_files"
    SELECTING_FILES = "selecting_files"
    READING_CONTEXT = "reading_context"
    GENERATING = "generating"
    APPLYING_OPERATIONS = "applying_operations"
    RUNNING_COMMANDS = "running_commands"
    COMMITTING = "committing"
    OPENING_PR = "opening_pr"
    CLEANING_UP = "cleaning_up"

    @property
    def step(self) -> int:
        """1-based position of the stage in the pipeline."""
        return list(PipelineStage).index(self) + 1


STAGE_CHECKPOINTS: Dict[PipelineStage, int] = {
    PipelineStage.FORKING: 10,
    PipelineStage.SANDBOXING: 20,
    PipelineStage.CLONING: 30,
    PipelineStage.FINDING_FILES: 40,
    PipelineStage.READING_CONTEXT: 60,
    PipelineStage.GENERATING: 70,
    PipelineStage.APPLYING_OPERATIONS: 80,
    PipelineStage.COMMITTING: 90,
    PipelineStage.CLEANING_UP: 100,
}


# Records a checkpoint on the job being processed
ProgressReporter = Callable[[int], Awaitable[None]]


class JobOutcome(BaseModel):
    """Result of a successful pipeline run."""

    success: bool = True

    pr_url: str = Field(..., min_length=1, description="URL of the opened PR")

    pr_number: int = Field(..., gt=0, description="Number of the opened PR")
