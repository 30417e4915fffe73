"""Lookup failure taxonomy."""

from typing import Optional

from xposed.schemas import ErrorCode


class LookupFailure(Exception):
    """Base class for every classified lookup failure."""

    code: ErrorCode = ErrorCode.NETWORK_ERROR

    def __init__(self, message: str = "", username: Optional[str] = None):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self.username = username


class InvalidInputError(LookupFailure):
    """Malformed username, rejected before any I/O."""
    code = ErrorCode.INVALID_INPUT


class RateLimitedError(LookupFailure):
    """Upstream signalled throttling."""
    code = ErrorCode.RATE_LIMITED

    def __init__(
        self,
        message: str = "",
        username: Optional[str] = None,
        retry_at_ms: Optional[int] = None,
    ):
        super().__init__(message, username)
        self.retry_at_ms = retry_at_ms


class UnauthorizedError(LookupFailure):
    """Credentials missing, invalid or expired. Never retried automatically."""
    code = ErrorCode.UNAUTHORIZED


class NetworkError(LookupFailure):
    """Timeout, connectivity problem or unexpected HTTP status."""
    code = ErrorCode.NETWORK_ERROR

    def __init__(
        self,
        message: str = "",
        username: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, username)
        self.status_code = status_code


class NotFoundError(LookupFailure):
    """Upstream confirmed there is nothing to report for this user."""
    code = ErrorCode.NOT_FOUND


class ParseError(LookupFailure):
    """Response shape was not what we expected."""
    code = ErrorCode.PARSE_ERROR
