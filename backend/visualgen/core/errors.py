from typing import Optional


class BatchValidationError(ValueError):
    """The batch request is malformed; no job was created."""


class BatchConflictError(RuntimeError):
    def __init__(self, scope: str, job_id: str) -> None:
        super().__init__(f"job {job_id} is still active in scope {scope!r}")
        self.scope = scope
        self.job_id = job_id


class JobStartupError(RuntimeError):
    """The job was created but its work list could not be expanded."""

    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(reason)
        self.job_id = job_id
        self.reason = reason


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class ItemNotRetryableError(RuntimeError):
    def __init__(self, message: str, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class InvalidTransitionError(ValueError):
    pass
