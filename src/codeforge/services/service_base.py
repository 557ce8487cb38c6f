"""Service Base Utilities
=========================

Shared exception hierarchy for the request layer and generation pipeline.

Usage Pattern:
    from codeforge.services.service_base import ServiceError, CompletionError

Callers map these uniformly: duplicates and lock contention are silent
control-flow signals, per-file completion/parse errors are recovered by the
worker's retry, and PipelineFailure is fatal for the job.
"""
from __future__ import annotations

from typing import Optional

__all__ = [
    'ServiceError', 'ValidationError', 'DuplicateRequestError', 'LockContentionError',
    'CompletionError', 'ParseError', 'PipelineFailure', 'InvalidTransitionError',
]


class ServiceError(Exception):
    """Base class for all service layer errors."""


class ValidationError(ServiceError):
    """Invalid input or failed validation rules."""


class DuplicateRequestError(ServiceError):
    """A request id was already registered within the retention window."""

    def __init__(self, request_id: str):
        super().__init__(f"Duplicate request: {request_id}")
        self.request_id = request_id


class LockContentionError(ServiceError):
    """Another owner holds the lease for this key."""

    def __init__(self, key: str, owner: Optional[str] = None):
        super().__init__(f"Lease '{key}' is held" + (f" (attempt {owner})" if owner else ""))
        self.key = key
        self.owner = owner


class CompletionError(ServiceError):
    """Model completion failed after the client's own retries."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class ParseError(ServiceError):
    """Model response did not match the expected JSON contract."""

    def __init__(self, message: str, raw: str = ''):
        super().__init__(message)
        self.raw = raw


class PipelineFailure(ServiceError):
    """A job produced zero files."""

    def __init__(self, job_id: str, message: str = 'No files were generated'):
        super().__init__(f"{job_id}: {message}")
        self.job_id = job_id


class InvalidTransitionError(ServiceError):
    """Job status change not permitted by the state machine."""
