"""Error taxonomy for the orchestration core."""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for orchestration errors."""

    def __init__(self, message: str, *, stage: str | None = None, original_error: Exception | None = None):
        self.message = message
        self.stage = stage
        self.original_error = original_error
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self).__name__


class ProviderError(PipelineError):
    """Network, rate-limit or upstream failure from the inference backend. Retryable."""


class StageTimeoutError(ProviderError):
    """A single inference attempt exceeded the stage timeout."""


class SchemaValidationError(PipelineError):
    """Well-formed response whose structure does not match the stage schema."""

    def __init__(self, message: str, *, stage: str | None = None, details: list[str] | None = None,
                 original_error: Exception | None = None):
        super().__init__(message, stage=stage, original_error=original_error)
        self.details = list(details or [])


class CriticalStageFailure(PipelineError):
    """A critical stage exhausted its retries or repairs; the job is aborted."""


class JobTimeout(PipelineError):
    """The job exceeded its overall time budget."""


class RegistryWriteConflict(PipelineError):
    """Optimistic version check failed while writing a job record."""


class JobNotFoundError(PipelineError):
    """No job is registered under the requested id."""


class JobAlreadyExistsError(PipelineError):
    """A job with the requested id already exists."""


class IllegalTransitionError(PipelineError):
    """A job status change that would move backward or skip a state."""
