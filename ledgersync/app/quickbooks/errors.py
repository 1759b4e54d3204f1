"""
QuickBooks sync error taxonomy.

Per-transaction errors (ValidationError, MappingError, RemoteFault) fail only
the record they belong to. AuthError is terminal for a whole job run.
RateLimitWait never leaves the rate limiter.
"""

from typing import Any, Optional


class QuickBooksError(Exception):
    """Base class for all sync engine errors."""
    pass


class AuthError(QuickBooksError):
    """Missing, expired or unrefreshable connection. The user must reconnect."""
    pass


class ConnectionExpired(AuthError):
    """Token refresh failed and the connection was marked inactive."""

    def __init__(self, message: str = "QuickBooks connection expired. Please reconnect."):
        super().__init__(message)


class RateLimitWait(QuickBooksError):
    """Raised inside the limiter when the window is full."""

    def __init__(self, wait_seconds: float):
        super().__init__(f"Rate limit window full, retry in {wait_seconds:.3f}s")
        self.wait_seconds = wait_seconds


class ValidationError(QuickBooksError):
    """Malformed local transaction record."""
    pass


class InvalidDate(ValidationError):
    pass


class ZeroAmount(ValidationError):
    pass


class MappingError(QuickBooksError):
    """No resolvable remote entity for a local key."""
    pass


class MissingMapping(MappingError):
    pass


class RemoteFault(QuickBooksError):
    """
    Structured fault returned by the QuickBooks API.

    The remote message is kept verbatim so it can be shown to the user.
    """

    def __init__(self, code: Optional[str], message: str, detail: Optional[str] = None,
                 status_code: Optional[int] = None, raw: Any = None):
        super().__init__(f"QuickBooks error: {message} ({code})")
        self.code = code
        self.message = message
        self.detail = detail
        self.status_code = status_code
        self.raw = raw
