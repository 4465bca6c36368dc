"""
PatternCast — Exception Types

Errors that cross engine boundaries and are mapped to HTTP responses by
``error_handlers``. Everything else is recovered locally inside the engines.
"""

from __future__ import annotations

from typing import Optional


class PatternCastError(Exception):
    """Base class for application errors."""

    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UpstreamUnavailableError(PatternCastError):
    """The vision gateway could not be reached, is rate-limited, or out of quota.

    This is the only failure that aborts a prediction: without a description
    of the current chart there is nothing to reason about.
    """

    status_code = 503

    def __init__(self, service: str, reason: str, retry_after: Optional[float] = None):
        self.service = service
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"{service} unavailable ({reason})")


class InvalidImageError(PatternCastError):
    """Uploaded payload could not be decoded as an image."""

    status_code = 400


class RecordNotFoundError(PatternCastError):
    status_code = 404

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record '{record_id}' not found")


class OutcomeAlreadyRecordedError(PatternCastError):
    """An analysis already carries a validated outcome (feedback is append-only)."""

    status_code = 409

    def __init__(self, record_id: str, outcome: str):
        self.record_id = record_id
        self.outcome = outcome
        super().__init__(f"Analysis '{record_id}' already has outcome '{outcome}'")
