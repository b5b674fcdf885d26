"""
Error taxonomy for the generation pipeline.

Each error carries the HTTP status the routers map it to:
  - ProviderError / TaskFailedError — external generation API failures (502)
  - StepTimeoutError               — no progress within a step's budget
  - ValidationError                — missing prerequisite artifact (400)
  - InsufficientCreditsError       — ledger check failed (402)
  - ForbiddenError / NotFoundError — ownership and lookup failures (403 / 404)
  - ConflictError                  — a stage is already in flight (409)
  - PersistenceError               — store write failure (500)
  - LedgerWriteError               — credit store write failure (500)
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the orchestrator."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderError(PipelineError):
    """Non-2xx or malformed response from an external generation API."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TaskFailedError(ProviderError):
    """The provider reported the task itself as failed."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class StepTimeoutError(PipelineError):
    status_code = 504

    def __init__(self, minutes: int):
        super().__init__(f"Task timeout: no progress for {minutes} minutes")
        self.minutes = minutes


class ValidationError(PipelineError):
    status_code = 400


class InsufficientCreditsError(PipelineError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: need {required}, have {available}")
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class ForbiddenError(PipelineError):
    status_code = 403


class NotFoundError(PipelineError):
    status_code = 404


class ConflictError(PipelineError):
    status_code = 409


class PersistenceError(PipelineError):
    status_code = 500


class LedgerWriteError(PersistenceError):
    pass
