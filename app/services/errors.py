"""
Domain-specific exception hierarchy for the payslip pipeline.

All pipeline exceptions inherit from PipelineError so callers (job handlers,
the service facade, HTTP endpoints) can catch broadly or narrowly. Each
exception carries structured context for logging.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        batch_id: int | str | None = None,
        details: dict | None = None,
    ) -> None:
        self.batch_id = batch_id
        self.details = details or {}
        super().__init__(message)


class CorruptInputError(PipelineError):
    """Uploaded container or document cannot be read. Fatal to the ingest run."""
    pass


class ArchiveLimitError(CorruptInputError):
    """Archive exceeds the nesting-depth or decompressed-size guard."""
    pass


class UploadValidationError(PipelineError):
    """Upload rejected before a batch is created (bad file type, period key...)."""
    pass


class BatchNotFoundError(PipelineError):
    pass


class BatchNotReadyError(PipelineError):
    """Batch ingest has not finished successfully, nothing can be sent yet."""
    pass


class BatchConflictError(PipelineError):
    """Batch is already being distributed by another job."""
    pass


class PayslipNotFoundError(PipelineError):
    pass


class PayslipAlreadySentError(PipelineError):
    """Single-payslip resend refused because the payslip was already delivered."""
    pass


class JobNotFoundError(PipelineError):
    pass


class QueueUnavailableError(PipelineError):
    """Job runtime is not accepting work (shutting down or queue full)."""
    pass


__all__ = [
    "PipelineError",
    "CorruptInputError",
    "ArchiveLimitError",
    "UploadValidationError",
    "BatchNotFoundError",
    "BatchNotReadyError",
    "BatchConflictError",
    "PayslipNotFoundError",
    "PayslipAlreadySentError",
    "JobNotFoundError",
    "QueueUnavailableError",
]
