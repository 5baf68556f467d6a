"""Error taxonomy for generation jobs.

Errors raised before a Job exists (validation, configuration) are returned to
the caller and leave no persisted state. Everything raised after creation is
written back into the Job record by whoever catches it.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(GenerationError):
    """Missing or malformed request fields."""


class ConfigurationError(GenerationError):
    """Credentials or endpoint id could not be resolved from settings."""


class SubmissionError(GenerationError):
    """The compute backend rejected the job or answered with an unusable body."""


class SubmissionFailed(SubmissionError):
    """Submission failed after the Job record was created and marked failed."""

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id


class BackendProtocolError(GenerationError):
    """The backend answered with a status or shape outside the protocol."""


class BackendReportedFailure(GenerationError):
    """The backend reported FAILED for the job."""

    def __init__(self, external_job_id: str, backend_error: Optional[str]):
        self.external_job_id = external_job_id
        self.backend_error = backend_error if backend_error is not None else "unknown error"
        super().__init__(self.backend_error)


class JobTimeoutError(GenerationError, TimeoutError):
    """The poll loop exceeded its wall-clock bound."""


class IngestionError(GenerationError):
    """Decoding, downloading or writing a result failed."""


class StorageError(GenerationError):
    """Local or object storage could not be read or written."""


class JobNotFoundError(GenerationError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class StaleJobError(GenerationError):
    """Compare-and-swap update lost against a concurrent writer."""

    def __init__(self, job_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Job {job_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.job_id = job_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransitionError(GenerationError):
    """A status change that would move a Job backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id}: cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested
