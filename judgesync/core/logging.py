"""
JudgeSync - Structured Logging

One JSON object per line in production, a short coloured line in
development. Records pick up the fields bound with ``LogContext`` (job,
entity, worker, validation run) so a single job or validation run can be
followed across modules without threading ids through every call.

Usage:
    logger = logging.getLogger(__name__)

    with LogContext(job_id=42, entity_type="judge", worker_id="w1"):
        logger.info("Fetching positions")
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from pydantic import BaseModel

from judgesync.core.error_taxonomy import classify_exception

T = TypeVar("T")

# =============================================================================
# Context
# =============================================================================

_fields: ContextVar[Dict[str, Any]] = ContextVar("judgesync_log_fields", default={})
_run: ContextVar[Optional[str]] = ContextVar("judgesync_run_id", default=None)


def get_current_context() -> Dict[str, Any]:
    return dict(_fields.get())


def set_context(**fields: Any) -> None:
    """Bind fields for the rest of the current context (no automatic restore)."""
    _fields.set({**_fields.get(), **fields})


def clear_context() -> None:
    _fields.set({})
    _run.set(None)


@contextmanager
def LogContext(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every record logged inside the block.

    ``run_id`` is kept apart from the other fields and printed first by the
    formatters. Previous bindings come back on exit, including on error.
    """
    run_token = _run.set(str(fields.pop("run_id"))) if "run_id" in fields else None
    fields_token = _fields.set({**_fields.get(), **fields})
    try:
        yield
    finally:
        _fields.reset(fields_token)
        if run_token is not None:
            _run.reset(run_token)


# =============================================================================
# Redaction
# =============================================================================

SENSITIVE_KEY_PARTS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credential", "dsn")
REDACTED = "[REDACTED]"


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Copy of ``data`` with values under sensitive-looking keys masked, at any nesting level."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if isinstance(data, dict):
        return {k: REDACTED if _is_sensitive(k) else redact_sensitive(v, max_depth - 1) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]
    return data


# =============================================================================
# Formatters
# =============================================================================

# Attributes lifted from ``extra={...}`` into the JSON document.
RECORD_FIELDS = (
    "job_id",
    "entity_type",
    "external_id",
    "worker_id",
    "attempt",
    "max_attempts",
    "duration_ms",
    "status",
    "error_code",
    "error_category",
    "retryable",
    "exception_type",
    "upstream",
    "count",
    "validation_id",
    "breaker_state",
    "retry_after",
)


class StructuredJsonFormatter(logging.Formatter):
    """
    Production formatter, e.g.

        {"level": "INFO", "logger": "judgesync.queue.worker",
         "message": "Worker job completed", "timestamp": "...",
         "run_id": "...", "job_id": 17, "entity_type": "judge",
         "duration_ms": 812.4, "status": "success"}
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_traceback: bool = True,
        redact_sensitive_data: bool = True,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_traceback = include_traceback
        self.redact_sensitive_data = redact_sensitive_data

    def _exception(self, record: logging.LogRecord) -> Dict[str, Any]:
        exc_type, exc, tb = record.exc_info  # type: ignore[misc]
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc) if exc else None,
            "traceback": traceback.format_exception(exc_type, exc, tb),
        }

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.include_timestamp:
            doc["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        run_id = _run.get()
        if run_id:
            doc["run_id"] = run_id
        doc.update(_fields.get())
        doc.update(
            (name, getattr(record, name)) for name in RECORD_FIELDS if getattr(record, name, None) is not None
        )
        if record.exc_info and self.include_traceback:
            doc["exception"] = self._exception(record)
        if self.redact_sensitive_data:
            doc = redact_sensitive(doc)
        return json.dumps(doc, default=str, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """Development formatter: time, level, logger, the job/worker tags, message."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    TAGS = ("job_id", "entity_type", "external_id", "worker_id", "validation_id")

    def format(self, record: logging.LogRecord) -> str:
        fields = _fields.get()
        tags = [f"{key}={fields[key]}" for key in self.TAGS if key in fields]
        run_id = _run.get()
        if run_id:
            tags.insert(0, f"run={run_id[:8]}")
        color = self.LEVEL_COLORS.get(record.levelname, "")
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}"
        if tags:
            line += f" [{' '.join(tags)}]"
        line += f" {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Handlers
# =============================================================================


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def _stream_handlers(formatter: logging.Formatter, level: int) -> List[logging.Handler]:
    """DEBUG/INFO to stdout, WARNING and above to stderr."""
    out = logging.StreamHandler(sys.stdout)
    out.setLevel(level)
    out.addFilter(_BelowWarning())
    err = logging.StreamHandler(sys.stderr)
    err.setLevel(max(level, logging.WARNING))
    for handler in (out, err):
        handler.setFormatter(formatter)
    return [out, err]


def configure_logging(level: str = "INFO", json_output: bool = True, service_name: str = "judgesync") -> None:
    """Replace the root handlers with the stdout/stderr pair. Call once per process."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = StructuredJsonFormatter() if json_output else ColoredConsoleFormatter()
    for handler in _stream_handlers(formatter, numeric_level):
        root.addHandler(handler)

    # one INFO line per request otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    set_context(service=service_name)


# =============================================================================
# Timing
# =============================================================================


class Timer:
    """``with Timer() as t: ...`` then ``t.elapsed_ms``; readable inside the block too."""

    def __init__(self) -> None:
        self.start_time = 0.0
        self.end_time: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        self.end_time = None
        return self

    def __exit__(self, *exc: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1000


def log_timing(
    logger: logging.Logger, operation: str, level: int = logging.INFO
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator: log ``operation`` with its duration, at ERROR if it raises."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with Timer() as timer:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    logger.error(
                        f"{operation} failed after {timer.elapsed_ms:.0f}ms: {e}",
                        extra={"duration_ms": round(timer.elapsed_ms, 2), "status": "error"},
                    )
                    raise
            logger.log(
                level,
                f"{operation} finished",
                extra={"duration_ms": round(timer.elapsed_ms, 2), "status": "success"},
            )
            return result

        return wrapper

    return decorator


# =============================================================================
# Worker job lines
# =============================================================================


def _job_extra(entity_type: str, job_id: int, status: str, **fields: Any) -> Dict[str, Any]:
    if "duration_ms" in fields:
        fields["duration_ms"] = round(fields["duration_ms"], 2)
    return {"job_id": job_id, "entity_type": entity_type, "status": status, **fields}


def log_worker_start(logger: logging.Logger, entity_type: str, job_id: int, worker_id: str, **extra: Any) -> None:
    logger.info(
        f"Worker job started ({entity_type} #{job_id})",
        extra=_job_extra(entity_type, job_id, "started", worker_id=worker_id, **extra),
    )


def log_worker_success(
    logger: logging.Logger, entity_type: str, job_id: int, duration_ms: float, **extra: Any
) -> None:
    logger.info(
        f"Worker job completed ({entity_type} #{job_id})",
        extra=_job_extra(entity_type, job_id, "success", duration_ms=duration_ms, **extra),
    )


def log_worker_failure(
    logger: logging.Logger,
    entity_type: str,
    job_id: int,
    error: Exception,
    duration_ms: float,
    attempt: int = 1,
    max_attempts: int = 5,
    terminal: bool = False,
    **extra: Any,
) -> None:
    """
    Terminal failures log at ERROR with the traceback; retries at WARNING without.

    The error is classified first, so untyped exceptions (a psycopg or httpx
    error that escaped a pipeline) still carry a stable code and category.
    """
    classified = classify_exception(error).to_log_dict()
    logger.log(
        logging.ERROR if terminal else logging.WARNING,
        f"Worker job failed ({entity_type} #{job_id}, attempt {attempt}/{max_attempts}): {error}",
        extra=_job_extra(
            entity_type,
            job_id,
            "failed" if terminal else "retrying",
            duration_ms=duration_ms,
            attempt=attempt,
            max_attempts=max_attempts,
            error_code=classified["error_code"],
            error_category=classified["error_category"],
            retryable=classified["retryable"],
            exception_type=classified["exception_type"],
            **extra,
        ),
        exc_info=terminal,
    )
