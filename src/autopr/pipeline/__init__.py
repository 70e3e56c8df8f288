"""The checkpointed task-to-pull-request pipeline."""

from src.autopr.pipeline.errors import CleanupError, PipelineStageError
from src.autopr.pipeline.models import (
    STAGE_CHECKPOINTS,
    JobOutcome,
    PipelineStage,
    ProgressReporter,
)
from src.autopr.pipeline.processor import JobProcessor

__all__ = [
    "STAGE_CHECKPOINTS",
    "CleanupError",
    "JobOutcome",
    "JobProcessor",
    "PipelineStage",
    "PipelineStageError",
    "ProgressReporter",
]
