"""Job queue exceptions."""

from typing import Optional

from src.autopr.jobs.models import JobState


class QueueError(Exception):
    """Raised when the queue backend fails to admit, read or update a job."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class JobNotFoundError(QueueError):
    """Raised when a job id is unknown to the queue."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransitionError(QueueError):
    """Raised when a job state transition is not allowed."""

    def __init__(self, job_id: str, from_state: JobState, to_state: JobState):
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for job {job_id}: "
            f"{from_state.value} -> {to_state.value}"
        )


class InvalidProgressError(QueueError):
    """Raised when a progress update is out of range, decreasing, or the
    job is not active."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(f"Invalid progress update for job {job_id}: {message}")
