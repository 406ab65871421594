"""Exception hierarchy for the import/export pipeline.

Errors fall into three families that drive the job state machine:

* fatal errors end the job in ``failed`` without retrying,
* transient errors requeue the job with backoff while attempts remain,
* row errors are recorded on the job and never change its status.

Caller-facing errors (``JobNotFound``, ``ResultUnavailable``, ``UploadRejected``)
are raised synchronously by the submission and polling surface.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class FatalJobError(PipelineError):
    """Raised when a job cannot succeed no matter how often it is retried."""


class TransientJobError(PipelineError):
    """Raised when an attempt failed for a reason that may clear on retry."""


class UnknownJobKind(FatalJobError):
    """Raised when no handler is registered for a job kind."""

    def __init__(
        self,
        kind: str,
        *,
        job_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        details["kind"] = kind
        if job_id:
            details["job_id"] = job_id
        self.kind = kind
        self.job_id = job_id
        super().__init__(f"Unknown job kind: {kind}", details)


class UnsupportedFormat(FatalJobError):
    """Raised when a file format cannot be parsed or generated."""

    def __init__(self, file_format: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["format"] = file_format
        self.file_format = file_format
        super().__init__(f"Unsupported file format: {file_format}", details)


class CorruptSource(FatalJobError):
    """Raised when a source file is not structurally well-formed."""


class SourceMissing(FatalJobError):
    """Raised when an import source no longer exists in storage."""


class StorageScopeError(FatalJobError):
    """Raised when a storage key falls outside the job's organization."""


class StorageError(TransientJobError):
    """Raised when reading or writing file storage fails."""


class RowError(PipelineError):
    """Raised by a row handler when a single row cannot be processed."""


class JobCancelled(PipelineError):
    """Raised inside an attempt when the submitter requested cancellation."""


class AttemptSuperseded(PipelineError):
    """Raised inside an attempt that no longer owns its job record or lease."""


class JobNotFound(PipelineError):
    """Raised when a job does not exist or belongs to another organization."""

    def __init__(self, job_id: str, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        details["job_id"] = job_id
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}", details)


class ResultUnavailable(PipelineError):
    """Raised when an export result cannot be downloaded."""


class UploadRejected(PipelineError):
    """Raised when an upload is refused before a job is created."""


__all__ = [
    "AttemptSuperseded",
    "CorruptSource",
    "FatalJobError",
    "JobCancelled",
    "JobNotFound",
    "PipelineError",
    "ResultUnavailable",
    "RowError",
    "SourceMissing",
    "StorageError",
    "StorageScopeError",
    "TransientJobError",
    "UnknownJobKind",
    "UnsupportedFormat",
    "UploadRejected",
]
