"""
Error taxonomy surfaced to callers.

Each error knows the HTTP status it maps to and how to render the JSON error body.
"""

from typing import Any, Dict


class ScanGateError(Exception):
    """Base class for errors that are returned to the caller."""
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_body(self) -> Dict[str, Any]:
        return {'success': False, 'error': self.message, **self.extra}


class ValidationError(ScanGateError):
    """A required field is missing or malformed. Not retried."""
    status_code = 400


class UnauthorizedError(ScanGateError):
    """No caller identity could be established."""
    status_code = 401


class InsufficientTokensError(ScanGateError):
    """A consume failed its balance condition."""
    status_code = 402

    def __init__(self, balance: int, message: str = 'Insufficient tokens'):
        super().__init__(message, tokenBalance=balance, scansRemaining=balance)
        self.balance = balance


class NotFoundError(ScanGateError):
    """An update targeted a record that does not exist."""
    status_code = 404


class UnexpectedChallengeError(ScanGateError):
    """The identity provider kept challenging after the one allowed response."""
    status_code = 500


class UpstreamUnavailableError(ScanGateError):
    """A dependency was unavailable for an operation that must fail closed. Retryable."""
    status_code = 503

    def __init__(self, message: str, **extra: Any):
        super().__init__(message, retryable=True, **extra)
