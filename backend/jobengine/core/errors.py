from typing import Optional


class JobError(Exception):
    """Base class for job engine errors."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(JobError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class CounterOverflowError(JobError):
    """An increment would push completed + failed past total_items."""

    def __init__(self, job_id: str, attempted: int, total: int) -> None:
        super().__init__(
            f"job {job_id} counters would reach {attempted} of {total} items"
        )
        self.job_id = job_id
        self.attempted = attempted
        self.total = total


class UnknownWorkflowError(JobError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown job kind: {kind}")
        self.kind = kind


class GenerationError(Exception):
    """Failure reported by an external generation capability."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class GenerationFailedError(Exception):
    """Raised by GenerationResult.unwrap() for an unsuccessful generation."""

    def __init__(self, reason: str, retryable: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable
