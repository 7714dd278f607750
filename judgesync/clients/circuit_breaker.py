"""
JudgeSync - Circuit Breaker

Per-upstream failure tracker shared by all workers.

States:
- CLOSED: normal operation, all calls allowed
- OPEN: failing, calls rejected immediately until the cooldown elapses
- HALF_OPEN: cooldown elapsed, exactly one trial call allowed

A successful trial call closes the breaker and zeroes the failure count; a failed
trial call reopens it and restarts the cooldown. ``state`` and ``snapshot()`` only
read: the OPEN -> HALF_OPEN move happens in ``before_call()``.

``CircuitBreaker`` keeps its record in process memory. Subclasses that store
the record elsewhere (see ``judgesync.storage.postgres.PostgresCircuitBreaker``)
override ``_locked()`` and ``_read()`` and inherit the state machine.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, TypeVar

from judgesync.core.error_taxonomy import CircuitOpen

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SECONDS = 60.0
# A trial slot held longer than this is treated as abandoned (its owner died).
DEFAULT_TRIAL_TIMEOUT_SECONDS = 300.0
TRANSITION_HISTORY = 50


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerTransition:
    from_state: BreakerState
    to_state: BreakerState
    at: float
    reason: str


@dataclass
class BreakerRecord:
    """Everything the state machine needs; one row per upstream when persisted."""

    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    opened_at: Optional[float] = None
    trial_started_at: Optional[float] = None
    total_failures: int = 0
    total_rejections: int = 0
    last_transition: Optional[str] = None


class CircuitBreaker:
    """Thread-safe circuit breaker for one upstream."""

    def __init__(
        self,
        upstream: str = "courtlistener",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        trial_timeout_seconds: float = DEFAULT_TRIAL_TIMEOUT_SECONDS,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be positive")
        self.upstream = upstream
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.trial_timeout_seconds = trial_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._record = BreakerRecord()
        self._transitions: Deque[BreakerTransition] = deque(maxlen=TRANSITION_HISTORY)

    # -------------------------------------------------------------------------
    # Record access
    # -------------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[BreakerRecord]:
        """Exclusive, writable access to the record; changes are kept on normal exit."""
        with self._lock:
            yield self._record

    def _read(self) -> BreakerRecord:
        with self._lock:
            return replace(self._record)

    # -------------------------------------------------------------------------
    # Internals (call with the record locked)
    # -------------------------------------------------------------------------

    def _move(self, record: BreakerRecord, to_state: BreakerState, reason: str) -> None:
        if to_state == record.state:
            return
        transition = BreakerTransition(record.state, to_state, self._clock(), reason)
        self._transitions.append(transition)
        record.state = to_state
        record.last_transition = f"{transition.from_state.value}->{to_state.value}"
        level = logging.WARNING if to_state == BreakerState.OPEN else logging.INFO
        logger.log(
            level,
            f"Circuit breaker for {self.upstream}: {transition.from_state.value} -> "
            f"{to_state.value} ({reason})",
            extra={"upstream": self.upstream, "breaker_state": to_state.value},
        )

    def _cooldown_remaining(self, record: BreakerRecord, now: float) -> float:
        if record.opened_at is None:
            return 0.0
        return max(0.0, record.opened_at + self.cooldown_seconds - now)

    def _trial_busy(self, record: BreakerRecord, now: float) -> bool:
        if record.trial_started_at is None:
            return False
        return now - record.trial_started_at < self.trial_timeout_seconds

    # -------------------------------------------------------------------------
    # Gate and outcome recording
    # -------------------------------------------------------------------------

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpen: breaker open and cooling down, or a half-open trial call is already running
        """
        rejected_for: Optional[float] = None
        with self._locked() as record:
            if record.state == BreakerState.CLOSED:
                return
            now = self._clock()
            if record.state == BreakerState.OPEN:
                remaining = self._cooldown_remaining(record, now)
                if remaining > 0:
                    rejected_for = remaining
                else:
                    self._move(record, BreakerState.HALF_OPEN, "cooldown elapsed")
            # HALF_OPEN: one trial call at a time
            if rejected_for is None and self._trial_busy(record, now):
                rejected_for = 0.0
            if rejected_for is None:
                record.trial_started_at = now
            else:
                record.total_rejections += 1
        # Raised outside the block so the rejection count is kept.
        if rejected_for is not None:
            raise CircuitOpen(self.upstream, retry_after=rejected_for)

    def allow_request(self) -> bool:
        """Non-raising form of ``before_call``."""
        try:
            self.before_call()
        except CircuitOpen:
            return False
        return True

    def record_success(self) -> None:
        with self._locked() as record:
            record.failure_count = 0
            record.trial_started_at = None
            record.opened_at = None
            if record.state != BreakerState.CLOSED:
                self._move(record, BreakerState.CLOSED, "trial call succeeded")

    def record_failure(self) -> None:
        with self._locked() as record:
            record.failure_count += 1
            record.total_failures += 1
            now = self._clock()
            if record.state == BreakerState.HALF_OPEN:
                record.trial_started_at = None
                record.opened_at = now
                self._move(record, BreakerState.OPEN, "trial call failed")
            elif record.state == BreakerState.CLOSED and (
                record.failure_count >= self.failure_threshold
            ):
                record.opened_at = now
                self._move(
                    record,
                    BreakerState.OPEN,
                    f"{record.failure_count} consecutive failures",
                )

    def release(self) -> None:
        """Give back an admitted call that never reached upstream (no outcome recorded)."""
        with self._locked() as record:
            record.trial_started_at = None

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker, recording any exception as a failure."""
        self.before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._locked() as record:
            record.failure_count = 0
            record.trial_started_at = None
            record.opened_at = None
            self._move(record, BreakerState.CLOSED, "manual reset")

    # -------------------------------------------------------------------------
    # Observation (no side effects)
    # -------------------------------------------------------------------------

    def _effective_state(self, record: BreakerRecord) -> BreakerState:
        if record.state == BreakerState.OPEN and self._cooldown_remaining(record, self._clock()) <= 0:
            return BreakerState.HALF_OPEN
        return record.state

    @property
    def state(self) -> BreakerState:
        """Effective state: an OPEN breaker whose cooldown has elapsed reads as HALF_OPEN."""
        return self._effective_state(self._read())

    @property
    def failure_count(self) -> int:
        return self._read().failure_count

    @property
    def total_failures(self) -> int:
        return self._read().total_failures

    @property
    def total_rejections(self) -> int:
        return self._read().total_rejections

    def transitions(self) -> List[BreakerTransition]:
        """Transitions made by this process."""
        with self._lock:
            return list(self._transitions)

    def snapshot(self) -> Dict[str, Any]:
        record = self._read()
        return {
            "upstream": self.upstream,
            "state": self._effective_state(record).value,
            "failure_count": record.failure_count,
            "failure_threshold": self.failure_threshold,
            "cooldown_remaining_seconds": round(self._cooldown_remaining(record, self._clock()), 1),
            "total_failures": record.total_failures,
            "total_rejections": record.total_rejections,
            "last_transition": record.last_transition,
        }
