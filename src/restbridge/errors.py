"""
Error taxonomy and the structured error returned to command handlers.

Every failure that leaves the client layer is converted to a
StructuredError, whose JSON form is the boundary contract:

    {"status": "error", "error_code": "...", "domain": "...",
     "message": "...", "retry_after_seconds": 30, "actionable_fix": "..."}
"""

import json
from enum import Enum
from typing import Any, Literal

import httpx
from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    AUTHENTICATION_FAILED = "authentication_failed"
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_REQUEST = "invalid_request"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApiError(Exception):
    """Base exception for remote API errors."""

    error_code = ErrorCode.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        retry_after: float | None = None,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.retry_after = retry_after
        self.reason = reason

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base

    def to_structured(self, domain: str) -> "StructuredError":
        return StructuredError.from_exception(self, domain)


class RateLimitError(ApiError):
    """Raised when the remote rate limit is exceeded (429)."""
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED


class QuotaExceededError(ApiError):
    """Raised when a usage quota is exhausted."""
    error_code = ErrorCode.QUOTA_EXCEEDED


class ServerError(ApiError):
    """Raised on server errors (5xx) - these are retryable."""
    error_code = ErrorCode.SERVER_ERROR


class NotFoundError(ApiError):
    """Raised when resource not found (404)."""
    error_code = ErrorCode.NOT_FOUND


class PermissionDeniedError(ApiError):
    """Raised when the caller lacks permission (403)."""
    error_code = ErrorCode.PERMISSION_DENIED


class TokenExpiredError(ApiError):
    """Raised when the server rejects the bearer token (401)."""
    error_code = ErrorCode.TOKEN_EXPIRED


class NetworkError(ApiError):
    """Raised when the server reports a request timeout (408)."""
    error_code = ErrorCode.NETWORK_ERROR


class InvalidRequestError(ApiError):
    """Raised for malformed requests, local or remote."""
    error_code = ErrorCode.INVALID_REQUEST


class AuthenticationFailedError(ApiError):
    """Raised when no usable credential can be obtained."""
    error_code = ErrorCode.AUTHENTICATION_FAILED


# Raised while building a request locally (bad URL, unencodable header, non-JSON body)
LOCAL_REQUEST_ERRORS = (httpx.InvalidURL, ValueError, TypeError)


class PaginationError(ApiError):
    """Raised by a pagination stream when a page cannot be fetched."""

    def __init__(self, error: "StructuredError"):
        super().__init__(error.message)
        self.error = error
        self.error_code = error.error_code
        self.retry_after = error.retry_after_seconds


# ---------------------------------------------------------------------------
# Structured error
# ---------------------------------------------------------------------------

ACTIONABLE_FIXES = {
    ErrorCode.AUTHENTICATION_FAILED: "Run 'restbridge auth login' to re-authenticate",
    ErrorCode.TOKEN_EXPIRED: "Run 'restbridge auth login' to re-authenticate",
    ErrorCode.NETWORK_ERROR: "Check your internet connection and try again",
    ErrorCode.PERMISSION_DENIED: "Check that the credential has the required scopes",
}


class StructuredError(BaseModel):
    """Typed failure result handed to command handlers."""

    status: Literal["error"] = "error"
    error_code: ErrorCode
    domain: str
    message: str
    retry_after_seconds: int | None = None
    actionable_fix: str | None = None

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_exception(cls, exc: BaseException, domain: str) -> "StructuredError":
        """Map any exception raised while serving a call to a structured error."""
        if isinstance(exc, ApiError):
            code = exc.error_code
            message = exc.message
            retry_after = exc.retry_after
        elif isinstance(exc, httpx.HTTPError):
            code = ErrorCode.NETWORK_ERROR
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            retry_after = None
        elif isinstance(exc, LOCAL_REQUEST_ERRORS):
            code = ErrorCode.INVALID_REQUEST
            message = f"Invalid request: {exc}"
            retry_after = None
        else:
            code = ErrorCode.SERVER_ERROR
            message = str(exc) or type(exc).__name__
            retry_after = None

        return cls(
            error_code=code,
            domain=domain,
            message=message,
            retry_after_seconds=_whole_seconds(retry_after),
            actionable_fix=ACTIONABLE_FIXES.get(code),
        )

    @classmethod
    def invalid_request(cls, domain: str, message: str) -> "StructuredError":
        return cls(error_code=ErrorCode.INVALID_REQUEST, domain=domain, message=message)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _whole_seconds(value: float | None) -> int | None:
    if value is None:
        return None
    whole = int(value)
    return whole if whole == value else whole + 1
