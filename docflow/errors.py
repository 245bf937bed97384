"""Exception hierarchy for the docflow ingestion pipeline.

Errors raised while a run is being started surface synchronously to the caller
(and are mapped to HTTP status codes by the API layer). Errors raised after the
run has suspended become terminal FAILED transitions recorded on the run.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class ValidationError(PipelineError):
    """Raised when request input or the stored subject object is unusable."""


class ExternalServiceError(PipelineError):
    """Raised when the OCR provider rejects a submission or result fetch."""


class PersistenceError(PipelineError):
    """Raised when a store write fails."""


class UnknownJobError(PipelineError):
    """Raised when no active job record exists for an external job id."""

    def __init__(self, external_job_id: str):
        super().__init__(f"No active job record for external job {external_job_id}")
        self.external_job_id = external_job_id


class ResumeError(PipelineError):
    """Raised when the orchestrator rejects a resume request."""


class InvalidStateError(ResumeError):
    """Raised when a transition is requested from the wrong stage."""

    def __init__(self, run_id: str, expected: str, actual: str):
        super().__init__(f"Run {run_id} is {actual}, expected {expected}")
        self.run_id = run_id
        self.expected = expected
        self.actual = actual


class PipelineTimeoutError(PipelineError):
    """Raised (and recorded) when a run or stage exceeds its time ceiling."""


class ProcessingError(PipelineError):
    """Raised when the result processor cannot produce a result."""


__all__ = [
    "PipelineError",
    "ValidationError",
    "ExternalServiceError",
    "PersistenceError",
    "UnknownJobError",
    "ResumeError",
    "InvalidStateError",
    "PipelineTimeoutError",
    "ProcessingError",
]
