"""Exception hierarchy and coarse error classification for sync failures.

Classification feeds the SyncError table so failed replays can be triaged
by type (connection, timeout, rate limit, validation, server, unknown) and
by severity.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorType(str, Enum):
    """Coarse failure categories recorded on SyncError rows."""

    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    VALIDATION_ERROR = "validation_error"
    API_ERROR = "api_error"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ── Exceptions ──────────────────────────────────────────────────────────────


class IntegrationError(Exception):
    """Base class for all errors raised by the sync core."""


class ExternalAPIError(IntegrationError):
    """A HubSpot or Rentman call returned a non-success status.

    Args:
        system: Name of the system that answered ("hubspot" / "rentman").
        status_code: HTTP status code of the response.
        message: Human-readable error description.
        body: Parsed JSON body or raw text of the response, if any.
    """

    def __init__(
        self,
        system: str,
        status_code: int,
        message: str,
        body: Any = None,
    ) -> None:
        super().__init__(f"{system} returned {status_code}: {message}")
        self.system = system
        self.status_code = status_code
        self.message = message
        self.body = body


class RateLimitError(ExternalAPIError):
    """429 response; retried by the client's backoff policy."""


class DuplicateObjectError(ExternalAPIError):
    """The destination rejected a create because the natural key exists.

    ``existing_id`` carries the id of the object that already holds the
    value, when the destination reports it.
    """

    def __init__(
        self,
        system: str,
        status_code: int,
        message: str,
        existing_id: str | None,
        body: Any = None,
    ) -> None:
        super().__init__(system, status_code, message, body)
        self.existing_id = existing_id


class CorrelationConflictError(IntegrationError):
    """An upsert matched two different correlation records."""


class UnsupportedOperationError(IntegrationError):
    """The system client cannot perform the requested primitive."""


class FileImportTimeoutError(IntegrationError):
    """HubSpot did not finish importing a file within the polling budget."""


# ── Classification ──────────────────────────────────────────────────────────


def classify_error(exc: BaseException) -> ErrorType:
    """Map an exception onto the coarse ErrorType taxonomy."""
    if isinstance(exc, RateLimitError):
        return ErrorType.RATE_LIMIT
    if isinstance(exc, ExternalAPIError):
        if exc.status_code >= 500:
            return ErrorType.API_ERROR
        if exc.status_code >= 400:
            return ErrorType.VALIDATION_ERROR
        return ErrorType.UNKNOWN
    if isinstance(exc, (httpx.TimeoutException, FileImportTimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        return ErrorType.CONNECTION_ERROR
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 429:
            return ErrorType.RATE_LIMIT
        if exc.response.status_code >= 500:
            return ErrorType.API_ERROR
        return ErrorType.VALIDATION_ERROR
    if isinstance(exc, (CorrelationConflictError, ValueError)):
        return ErrorType.VALIDATION_ERROR
    return ErrorType.UNKNOWN


def error_severity(exc: BaseException) -> Severity:
    """Server-side and connectivity failures are high, everything else medium."""
    error_type = classify_error(exc)
    if error_type in (ErrorType.API_ERROR, ErrorType.CONNECTION_ERROR):
        return Severity.HIGH
    return Severity.MEDIUM


def error_status_code(exc: BaseException) -> str | None:
    """Return the HTTP status code carried by ``exc`` as a string, if any."""
    if isinstance(exc, ExternalAPIError):
        return str(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return str(exc.response.status_code)
    return None
