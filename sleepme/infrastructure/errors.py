"""Custom exceptions for the SleepMe client."""

from __future__ import annotations


class SleepMeError(Exception):
    """Base exception for SleepMe."""


class SleepMeRateLimitError(SleepMeError):
    """Raised when the API answers with HTTP 429."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class SleepMeConnectionError(SleepMeError):
    """Raised when connection to the SleepMe API fails."""


class SleepMeAPIError(SleepMeError):
    """Raised when API returns an error."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SleepMeTimeoutError(SleepMeError):
    """Raised when request times out."""


class SleepMeAuthError(SleepMeError):
    """Raised when the API token is missing or rejected."""


class SleepMeParseError(SleepMeError):
    """Raised when a response has an unexpected shape."""


class SleepMeValidationError(SleepMeError):
    """Raised when input validation fails."""


def is_transient_error(err: BaseException) -> bool:
    """Return True if a failed request may succeed when retried.

    Network failures, timeouts and 5xx responses are transient. Rate
    limits are handled separately and auth or client errors never are.
    """
    if isinstance(err, (SleepMeConnectionError, SleepMeTimeoutError)):
        return True
    if isinstance(err, SleepMeAPIError):
        return err.status is None or err.status >= 500
    return False
