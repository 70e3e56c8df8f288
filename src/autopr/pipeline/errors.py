"""Pipeline exceptions."""

from src.autopr.pipeline.models import PipelineStage


def describe_error(error: BaseException) -> str:
    """Human-readable error text, falling back to the exception class name."""
    return str(error) or type(error).__name__


class PipelineStageError(Exception):
    """Raised when a collaborator call fails inside a pipeline stage.

    The message is ``"<stage>: <cause>"`` so a stored failure reason names
    the stage that failed. The cause is also chained via ``__cause__``.

    Attributes:
        stage: The stage that failed.
        cause: The underlying exception.
    """

    def __init__(self, stage: PipelineStage, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage.value}: {describe_error(cause)}")


class CleanupError(Exception):
    """A sandbox release failed. Logged by the pipeline, never raised."""

    def __init__(self, project_id: str, cause: BaseException):
        self.project_id = project_id
        self.cause = cause
        super().__init__(
            f"Failed to clean up sandbox {project_id}: {describe_error(cause)}"
        )
