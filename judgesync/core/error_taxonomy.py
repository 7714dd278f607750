"""
JudgeSync - Error Taxonomy

Structured error classification for sync workers and the validator.
Every error gets a stable error_code that can be:
- Aggregated in logs
- Used for alerting rules
- Stored as the last_error prefix on failed jobs

Error Code Format: JSE-{CATEGORY}-{NUMBER}
- JSE = JudgeSync Error prefix
- CATEGORY = CONFIG, DB, UPSTREAM, QUEUE, VALIDATION, INTERNAL
- NUMBER = 3-digit error number

Categories:
- CONFIG (001-099): Configuration and environment errors
- DB (100-199): Database connectivity and query errors
- UPSTREAM (200-299): External legal-data API errors
- QUEUE (300-399): Job lifecycle errors
- VALIDATION (500-599): Payload and schema validation errors
- INTERNAL (900-999): Unexpected internal errors

Retry semantics follow the exception class, not the code:
TransientUpstreamError is retried, PermanentUpstreamError is not,
PersistenceError is surfaced to the caller untouched.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    DB = "DB"
    UPSTREAM = "UPSTREAM"
    QUEUE = "QUEUE"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


# -----------------------------------------------------------------------------
# CONFIG Errors (001-099)
# -----------------------------------------------------------------------------
ERR_CONFIG_MISSING_DSN = ErrorCode(
    code="JSE-CONFIG-001",
    category=ErrorCategory.CONFIG,
    message="Database URL is not configured",
)
ERR_CONFIG_INVALID_VALUE = ErrorCode(
    code="JSE-CONFIG-002",
    category=ErrorCategory.CONFIG,
    message="Configuration value is invalid",
)

# -----------------------------------------------------------------------------
# DB Errors (100-199)
# -----------------------------------------------------------------------------
ERR_DB_CONNECTION = ErrorCode(
    code="JSE-DB-100",
    category=ErrorCategory.DB,
    message="Database connection failed",
    retryable=True,
)
ERR_DB_QUERY_ERROR = ErrorCode(
    code="JSE-DB-110",
    category=ErrorCategory.DB,
    message="Database query failed",
)
ERR_DB_CONSTRAINT = ErrorCode(
    code="JSE-DB-111",
    category=ErrorCategory.DB,
    message="Database constraint violation",
)

# -----------------------------------------------------------------------------
# UPSTREAM Errors (200-299)
# -----------------------------------------------------------------------------
ERR_UPSTREAM_TIMEOUT = ErrorCode(
    code="JSE-UPSTREAM-200",
    category=ErrorCategory.UPSTREAM,
    message="Upstream request timed out",
    retryable=True,
)
ERR_UPSTREAM_TRANSPORT = ErrorCode(
    code="JSE-UPSTREAM-201",
    category=ErrorCategory.UPSTREAM,
    message="Upstream connection failed",
    retryable=True,
)
ERR_UPSTREAM_RATE_LIMITED = ErrorCode(
    code="JSE-UPSTREAM-210",
    category=ErrorCategory.UPSTREAM,
    message="Upstream rate limit exceeded",
    retryable=True,
)
ERR_UPSTREAM_CIRCUIT_OPEN = ErrorCode(
    code="JSE-UPSTREAM-220",
    category=ErrorCategory.UPSTREAM,
    message="Circuit breaker open for upstream",
    retryable=True,
)
ERR_UPSTREAM_SERVER = ErrorCode(
    code="JSE-UPSTREAM-230",
    category=ErrorCategory.UPSTREAM,
    message="Upstream server error",
    retryable=True,
)
ERR_UPSTREAM_CLIENT = ErrorCode(
    code="JSE-UPSTREAM-240",
    category=ErrorCategory.UPSTREAM,
    message="Upstream rejected the request",
)
ERR_UPSTREAM_MALFORMED = ErrorCode(
    code="JSE-UPSTREAM-250",
    category=ErrorCategory.UPSTREAM,
    message="Upstream returned a malformed payload",
)

# -----------------------------------------------------------------------------
# QUEUE Errors (300-399)
# -----------------------------------------------------------------------------
ERR_QUEUE_INVALID_PAYLOAD = ErrorCode(
    code="JSE-QUEUE-300",
    category=ErrorCategory.QUEUE,
    message="Job payload failed validation",
)
ERR_QUEUE_CANCELLED = ErrorCode(
    code="JSE-QUEUE-310",
    category=ErrorCategory.QUEUE,
    message="Job was cancelled",
)
ERR_QUEUE_LEASE_EXPIRED = ErrorCode(
    code="JSE-QUEUE-320",
    category=ErrorCategory.QUEUE,
    message="Worker lease expired",
    retryable=True,
)
ERR_QUEUE_NO_HANDLER = ErrorCode(
    code="JSE-QUEUE-330",
    category=ErrorCategory.QUEUE,
    message="No pipeline registered for entity type",
)

# -----------------------------------------------------------------------------
# VALIDATION Errors (500-599)
# -----------------------------------------------------------------------------
ERR_VALIDATION_INPUT = ErrorCode(
    code="JSE-VALIDATION-500",
    category=ErrorCategory.VALIDATION,
    message="Input validation failed",
)

# -----------------------------------------------------------------------------
# INTERNAL Errors (900-999)
# -----------------------------------------------------------------------------
ERR_INTERNAL_UNKNOWN = ErrorCode(
    code="JSE-INTERNAL-900",
    category=ErrorCategory.INTERNAL,
    message="Unknown internal error",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class JudgeSyncError(Exception):
    """Base class for all typed errors raised by judgesync."""

    error_code: ErrorCode = ERR_INTERNAL_UNKNOWN

    def __init__(self, message: str | None = None, *, error_code: ErrorCode | None = None):
        if error_code is not None:
            self.error_code = error_code
        self.message = message or self.error_code.message
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable

    def describe(self) -> str:
        """Short form stored as a job's last_error."""
        return f"[{self.error_code}] {self.message}"


class TransientUpstreamError(JudgeSyncError):
    """Timeouts, 5xx, 429 and transport failures. Safe to retry."""

    error_code = ERR_UPSTREAM_TRANSPORT


class PermanentUpstreamError(JudgeSyncError):
    """4xx (other than 429) or an unusable payload. Never retried."""

    error_code = ERR_UPSTREAM_CLIENT


class RateLimitExceeded(TransientUpstreamError):
    """Raised when a token is not available within the allowed wait, or on HTTP 429."""

    error_code = ERR_UPSTREAM_RATE_LIMITED

    def __init__(self, message: str | None = None, *, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpen(TransientUpstreamError):
    """Raised without calling upstream while the breaker is open."""

    error_code = ERR_UPSTREAM_CIRCUIT_OPEN

    def __init__(self, upstream: str, retry_after: float = 0.0):
        super().__init__(f"circuit open for {upstream} (retry in {retry_after:.1f}s)")
        self.upstream = upstream
        self.retry_after = retry_after


class UpstreamTimeout(TransientUpstreamError):
    error_code = ERR_UPSTREAM_TIMEOUT


class UpstreamError(JudgeSyncError):
    """An HTTP error status from upstream. Use ``upstream_error_for`` to construct."""

    def __init__(self, status: int, message: str | None = None, *, retry_after: float | None = None):
        super().__init__(message or f"upstream returned HTTP {status}")
        self.status = status
        self.retry_after = retry_after


class RetryableUpstreamError(UpstreamError, TransientUpstreamError):
    error_code = ERR_UPSTREAM_SERVER


class RateLimitedResponse(RetryableUpstreamError, RateLimitExceeded):
    """HTTP 429 from upstream."""

    error_code = ERR_UPSTREAM_RATE_LIMITED

    def __init__(self, message: str | None = None, *, retry_after: float | None = None):
        UpstreamError.__init__(self, 429, message, retry_after=retry_after)


class NonRetryableUpstreamError(UpstreamError, PermanentUpstreamError):
    error_code = ERR_UPSTREAM_CLIENT


class MalformedPayloadError(PermanentUpstreamError):
    error_code = ERR_UPSTREAM_MALFORMED


def upstream_error_for(
    status: int,
    message: str | None = None,
    retry_after: float | None = None,
) -> UpstreamError:
    """Build the typed error for an HTTP status: 429/5xx transient, other 4xx permanent."""
    if status == 429:
        return RateLimitedResponse(message, retry_after=retry_after)
    if status >= 500:
        return RetryableUpstreamError(status, message, retry_after=retry_after)
    return NonRetryableUpstreamError(status, message)


class PersistenceError(JudgeSyncError):
    """Constraint violation or connection failure in the relational store."""

    error_code = ERR_DB_QUERY_ERROR


class InvalidJobPayload(JudgeSyncError):
    error_code = ERR_QUEUE_INVALID_PAYLOAD


class JobCancelled(JudgeSyncError):
    """Raised cooperatively when a running job is cancelled out of band."""

    error_code = ERR_QUEUE_CANCELLED

    def __init__(self, job_id: int):
        super().__init__(f"job {job_id} was cancelled")
        self.job_id = job_id


class ConfigurationError(JudgeSyncError):
    error_code = ERR_CONFIG_INVALID_VALUE


# =============================================================================
# STRUCTURED ERROR
# =============================================================================


@dataclass
class StructuredError:
    """
    Structured error for logging and reporting.

    Captures all relevant context for incident response.
    """

    error_code: ErrorCode
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = field(default_factory=dict)
    original_exception: Optional[Exception] = None
    traceback_str: Optional[str] = None

    def __post_init__(self) -> None:
        if self.original_exception and not self.traceback_str:
            self.traceback_str = "".join(
                traceback.format_exception(
                    type(self.original_exception),
                    self.original_exception,
                    self.original_exception.__traceback__,
                )
            )

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict suitable for structured logging."""
        return {
            "error_code": str(self.error_code),
            "error_category": self.error_code.category.value,
            "error_message": self.message,
            "retryable": self.error_code.retryable,
            "timestamp": self.timestamp.isoformat(),
            **self.context,
        }

    def log(self, level: int = logging.ERROR) -> None:
        """Log this error with structured context."""
        logger.log(
            level,
            f"[{self.error_code}] {self.message}",
            extra=self.to_log_dict(),
            exc_info=self.original_exception,
        )


# =============================================================================
# ERROR CLASSIFIER
# =============================================================================


def classify_exception(exc: Exception, context: dict[str, Any] | None = None) -> StructuredError:
    """
    Classify an exception into a structured error.

    Typed judgesync errors keep their own code; third-party exceptions are
    mapped by type name so this module does not import psycopg or httpx.
    """
    context = context or {}
    exc_type = type(exc).__name__
    exc_module = type(exc).__module__ or ""
    exc_msg = str(exc)

    if isinstance(exc, JudgeSyncError):
        error_code = exc.error_code
    elif exc_module.startswith("psycopg"):
        if "connection" in exc_msg.lower() or exc_type == "OperationalError":
            error_code = ERR_DB_CONNECTION
        elif "violates" in exc_msg.lower() or exc_type == "IntegrityError":
            error_code = ERR_DB_CONSTRAINT
        else:
            error_code = ERR_DB_QUERY_ERROR
    elif exc_module.startswith("httpx"):
        if "Timeout" in exc_type:
            error_code = ERR_UPSTREAM_TIMEOUT
        else:
            error_code = ERR_UPSTREAM_TRANSPORT
    elif "ValidationError" in exc_type:
        error_code = ERR_VALIDATION_INPUT
    else:
        error_code = ERR_INTERNAL_UNKNOWN

    return StructuredError(
        error_code=error_code,
        message=exc_msg,
        context={"exception_type": exc_type, **context},
        original_exception=exc,
    )


def log_classified_error(
    exc: Exception,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> StructuredError:
    """Classify and log an exception in one call."""
    structured = classify_exception(exc, context)
    structured.log(level)
    return structured
