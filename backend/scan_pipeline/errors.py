"""
Exception hierarchy for the scan ingestion pipeline.

All pipeline exceptions inherit from PipelineError so callers can
catch broadly or narrowly. Each exception carries the job id and
stage name where known, for logging and for the job's error_message.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        job_id: Optional[int] = None,
        stage: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        self.message = message
        self.job_id = job_id
        self.stage = stage
        self.details = details or {}
        super().__init__(message)


class ValidationError(PipelineError):
    """Caller input was rejected before anything was enqueued."""
    pass


class UnsafeImageUrlError(ValidationError):
    """Image URL failed the outbound URL policy."""
    pass


class DuplicateSubmissionError(PipelineError):
    """A job with the same idempotency key already exists."""

    def __init__(self, message: str, *, existing_job_id: Optional[int] = None, **kwargs) -> None:
        self.existing_job_id = existing_job_id
        super().__init__(message, job_id=existing_job_id, **kwargs)


class QueueStateError(PipelineError):
    """A status transition was requested that the job's current state does not allow."""
    pass


class StageError(PipelineError):
    """A pipeline stage failed. Fatal stage errors abort the job."""

    fatal = True


class ExtractionError(StageError):
    """Label extraction produced no usable data."""
    pass


class EnrichmentError(StageError):
    """Enrichment call failed; the job continues with unenriched data."""

    fatal = False


class GeocodingError(StageError):
    """Geocoding call failed; the producer location stays unset."""

    fatal = False


class ResolutionError(StageError):
    """Writing the wine graph hit an unrecoverable database error."""
    pass


class StorageError(PipelineError):
    """Object storage operation failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message, **kwargs)


class AuthError(PipelineError):
    """Caller could not be authenticated or is not allowed."""
    pass
