"""Pipeline error taxonomy.

Every failure the pipeline can raise derives from PipelineError so that
service boundaries can translate them consistently.
"""
from typing import Optional


class PipelineError(Exception):
    """Base exception for analytics pipeline errors."""
    pass


class CaptureError(PipelineError):
    """Local capture failed (never surfaced to the UI)."""
    pass


class ValidationError(PipelineError):
    """Batch content rejected by validation.

    The client must not retry the same content.

    Attributes:
        reason: One of ``validation``, ``pii-detected`` or ``malformed``
        event_id: Offending event, when known
    """

    VALIDATION = "validation"
    PII_DETECTED = "pii-detected"
    MALFORMED = "malformed"

    REASONS = frozenset({VALIDATION, PII_DETECTED, MALFORMED})

    def __init__(
        self,
        reason: str,
        message: str,
        event_id: Optional[str] = None,
    ):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown rejection reason: {reason}")
        super().__init__(message)
        self.reason = reason
        self.event_id = event_id


class TransientNetworkError(PipelineError):
    """Upload failed for a reason worth retrying (timeout, 5xx, offline)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SaltUnavailable(PipelineError):
    """No daily salt exists for the requested date and none can be generated."""
    pass


class AuthorizationError(PipelineError):
    """Caller's classroom scope does not cover the requested data.

    Not retryable with the same credentials; ``code`` is the error value
    the ingestion endpoint reports for it.
    """

    code = "scope_denied"


class InvalidTransition(PipelineError):
    """Sync state machine was asked to make an illegal transition."""
    pass


class RetentionFailure(PipelineError):
    """A retention step failed; the next scheduled run resumes."""
    pass


class RetentionLockBusy(RetentionFailure):
    """Another retention run holds the advisory lock."""
    pass
