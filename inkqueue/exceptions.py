"""Exceptions raised by the job queue."""

from typing import Optional


class InkQueueError(Exception):
    """Base class for queue errors."""


class JobNotFoundError(InkQueueError, LookupError):
    """No job with the given id exists in storage."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(InkQueueError):
    """A job status change that the lifecycle does not allow."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class PoolExhaustedError(InkQueueError):
    """Every credential in the pool is disabled (or the pool is empty)."""

    def __init__(self, message: str = "No active API key available"):
        super().__init__(message)


class AttemptTimeoutError(InkQueueError):
    """A single attempt ran past its deadline."""

    def __init__(self, timeout: float):
        super().__init__(f"Attempt timed out after {timeout:g}s")
        self.timeout = timeout


class UnknownJobKindError(InkQueueError):
    """No handler is registered for a job kind."""

    def __init__(self, kind: str):
        super().__init__(f"No handler registered for job kind: {kind}")
        self.kind = kind


class RetriesExhaustedError(InkQueueError):
    """All attempts for a job failed.

    The message is the text of the last attempt's error, which is what ends
    up on the job record.
    """

    def __init__(self, last_error: Optional[BaseException], attempts: int):
        if last_error is None:
            message = "Job failed"
        else:
            message = str(last_error) or type(last_error).__name__
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class QueueClosedError(InkQueueError, RuntimeError):
    """The queue is shutting down and no longer accepts jobs."""

    def __init__(self, message: str = "Queue is shutting down"):
        super().__init__(message)
