"""
JudgeSync - Upstream Rate Limiter

Token bucket shared by every worker, keyed by upstream name. A spent token
comes back exactly ``window_seconds`` after it was taken, so no rolling
window ever sees more than the effective capacity.

The effective capacity keeps a safety margin below the documented quota
(default 90% of 5000/hour) so the same API key stays usable for manual and
administrative calls.

``RateLimiter`` counts tokens in process memory, which covers every worker
thread of one process. ``judgesync.storage.postgres.PostgresRateLimiter``
keeps the spent tokens in the database so separate worker processes draw
from one budget; it overrides the bucket primitives below and nothing else.

Usage:
    limiter = RateLimiter(hourly_limit=5000, safety_ratio=0.9)
    limiter.acquire("courtlistener")            # blocks until a token is free
    limiter.acquire("courtlistener", block=False)  # raises RateLimitExceeded
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from judgesync.core.error_taxonomy import RateLimitExceeded

logger = logging.getLogger(__name__)

# Defaults for the CourtListener REST API
DEFAULT_HOURLY_LIMIT = 5000
DEFAULT_SAFETY_RATIO = 0.9
DEFAULT_WARNING_THRESHOLD = 4000
DEFAULT_WINDOW_SECONDS = 3600.0


@dataclass
class _Bucket:
    """Timestamps of tokens spent inside the current window."""

    spent: Deque[float] = field(default_factory=deque)
    total_acquired: int = 0
    total_rejected: int = 0


class RateLimiter:
    """Thread-safe token bucket per upstream."""

    def __init__(
        self,
        hourly_limit: int = DEFAULT_HOURLY_LIMIT,
        safety_ratio: float = DEFAULT_SAFETY_RATIO,
        warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if hourly_limit < 1:
            raise ValueError("hourly_limit must be positive")
        if not 0 < safety_ratio <= 1:
            raise ValueError("safety_ratio must be in (0, 1]")
        self.hourly_limit = hourly_limit
        self.capacity = max(1, int(hourly_limit * safety_ratio))
        self.warning_threshold = min(warning_threshold, self.capacity)
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}
        self._warned_at: Dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Bucket primitives
    # -------------------------------------------------------------------------

    def _bucket(self, upstream: str) -> _Bucket:
        bucket = self._buckets.get(upstream)
        if bucket is None:
            bucket = self._buckets[upstream] = _Bucket()
        return bucket

    def _expire(self, bucket: _Bucket, now: float) -> None:
        horizon = now - self.window_seconds
        while bucket.spent and bucket.spent[0] <= horizon:
            bucket.spent.popleft()

    def _take(self, upstream: str, now: float) -> Tuple[float, int]:
        """
        Atomically take a token if one is free.

        Returns (seconds until a token frees up, tokens spent in the window);
        the wait is 0.0 when the token was taken.
        """
        with self._lock:
            bucket = self._bucket(upstream)
            self._expire(bucket, now)
            if len(bucket.spent) >= self.capacity:
                return max(0.0, bucket.spent[0] + self.window_seconds - now), len(bucket.spent)
            bucket.spent.append(now)
            bucket.total_acquired += 1
            return 0.0, len(bucket.spent)

    def _window(self, upstream: str, now: float) -> Tuple[int, Optional[float]]:
        """Tokens spent in the window ending at ``now`` and when the oldest was taken."""
        with self._lock:
            bucket = self._bucket(upstream)
            self._expire(bucket, now)
            return len(bucket.spent), (bucket.spent[0] if bucket.spent else None)

    def _count_rejection(self, upstream: str) -> None:
        with self._lock:
            self._bucket(upstream).total_rejected += 1

    def _totals(self, upstream: str) -> Tuple[int, int]:
        with self._lock:
            bucket = self._bucket(upstream)
            return bucket.total_acquired, bucket.total_rejected

    def _clear(self, upstream: Optional[str]) -> None:
        with self._lock:
            if upstream is None:
                self._buckets.clear()
            else:
                self._buckets.pop(upstream, None)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _warn_if_close(self, upstream: str, used: int, now: float) -> None:
        if used < self.warning_threshold:
            return
        with self._lock:
            warned_at = self._warned_at.get(upstream)
            if warned_at is not None and now - warned_at < self.window_seconds:
                return
            self._warned_at[upstream] = now
        logger.warning(
            f"Approaching rate limit for {upstream}: {used}/{self.capacity} in window",
            extra={"upstream": upstream, "count": used},
        )

    def _try_take(self, upstream: str) -> float:
        """Take a token if one is free; otherwise return seconds until one is."""
        now = self._clock()
        wait, used = self._take(upstream, now)
        if wait > 0:
            return wait
        self._warn_if_close(upstream, used, now)
        return 0.0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def acquire(
        self,
        upstream: str = "courtlistener",
        block: bool = True,
        max_wait: Optional[float] = None,
    ) -> None:
        """
        Take one token for ``upstream``.

        Args:
            upstream: Bucket key
            block: Wait for a token instead of failing fast
            max_wait: Upper bound on total waiting; None waits as long as needed

        Raises:
            RateLimitExceeded: no token available (fail-fast) or max_wait would be exceeded
        """
        waited = 0.0
        while True:
            wait = self._try_take(upstream)
            if wait <= 0:
                return
            if not block or (max_wait is not None and waited + wait > max_wait):
                self._count_rejection(upstream)
                raise RateLimitExceeded(
                    f"rate limit reached for {upstream}: {self.capacity} requests per "
                    f"{self.window_seconds:.0f}s",
                    retry_after=wait,
                )
            logger.info(
                f"Rate limit reached for {upstream}, waiting {wait:.1f}s",
                extra={"upstream": upstream, "retry_after": round(wait, 2)},
            )
            self._sleep(wait)
            waited += wait

    def remaining(self, upstream: str = "courtlistener") -> int:
        """Tokens available right now."""
        return self.capacity - self.used(upstream)

    def used(self, upstream: str = "courtlistener") -> int:
        used, _ = self._window(upstream, self._clock())
        return used

    def utilization(self, upstream: str = "courtlistener") -> float:
        """Percent of the effective capacity spent in the current window."""
        return round(self.used(upstream) / self.capacity * 100, 2)

    def reset_in(self, upstream: str = "courtlistener") -> float:
        """Seconds until the oldest spent token returns (0 when nothing is spent)."""
        now = self._clock()
        _, oldest = self._window(upstream, now)
        if oldest is None:
            return 0.0
        return max(0.0, oldest + self.window_seconds - now)

    def status(self, upstream: str = "courtlistener") -> Dict[str, Any]:
        """Snapshot for health and admin queries."""
        now = self._clock()
        used, oldest = self._window(upstream, now)
        acquired, rejected = self._totals(upstream)
        reset_in = 0.0 if oldest is None else max(0.0, oldest + self.window_seconds - now)
        return {
            "upstream": upstream,
            "limit": self.hourly_limit,
            "effective_limit": self.capacity,
            "used": used,
            "remaining": self.capacity - used,
            "utilization_pct": round(used / self.capacity * 100, 2),
            "reset_in_seconds": round(reset_in, 1),
            "warning": used >= self.warning_threshold,
            "total_acquired": acquired,
            "total_rejected": rejected,
        }

    def reset(self, upstream: Optional[str] = None) -> None:
        """Forget spent tokens for one upstream, or all of them."""
        self._clear(upstream)
        with self._lock:
            if upstream is None:
                self._warned_at.clear()
            else:
                self._warned_at.pop(upstream, None)
