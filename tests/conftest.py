"""
tests/conftest.py

Shared fixtures for the judgesync test suite.

Everything here is a fake: in-memory stores, an httpx.MockTransport standing
in for CourtListener, and clocks the test advances by hand. Tests that need a
real Postgres are marked ``integration`` and skipped unless
JUDGESYNC_TEST_DATABASE_URL is set.
"""

from __future__ import annotations

import os
from typing import Callable, List, Optional

import httpx
import pytest

from judgesync.clients.circuit_breaker import CircuitBreaker
from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.config import reset_settings
from judgesync.queue.manager import SyncQueueManager
from judgesync.storage.memory import InMemoryEntityStore, InMemoryJobStore, InMemoryReportStore
from tests.helpers import BASE_URL, FakeClock, FakeCourtListener, FakeMonotonic

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "integration: requires a live Postgres database (JUDGESYNC_TEST_DATABASE_URL)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    if os.getenv("JUDGESYNC_TEST_DATABASE_URL"):
        return
    skip = pytest.mark.skip(reason="JUDGESYNC_TEST_DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch: pytest.MonkeyPatch):
    """Keep the host environment out of Settings."""
    for key in list(os.environ):
        if key.startswith("JUDGESYNC_") and key != "JUDGESYNC_TEST_DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# CLOCKS
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# =============================================================================
# STORES AND QUEUE
# =============================================================================


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def report_store() -> InMemoryReportStore:
    return InMemoryReportStore()


@pytest.fixture
def queue(job_store: InMemoryJobStore, clock: FakeClock) -> SyncQueueManager:
    return SyncQueueManager(job_store, clock=clock)


# =============================================================================
# UPSTREAM
# =============================================================================


@pytest.fixture
def upstream() -> FakeCourtListener:
    return FakeCourtListener()


@pytest.fixture
def make_client(monotonic: FakeMonotonic) -> Callable[..., CourtListenerClient]:
    """Client factory over a MockTransport; retries and rate-limit waits sleep on the fake clock."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        *,
        max_retries: int = 3,
        limiter: Optional[RateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> CourtListenerClient:
        return CourtListenerClient(
            BASE_URL,
            "test-token",
            rate_limiter=limiter or RateLimiter(clock=monotonic, sleep=monotonic.sleep),
            circuit_breaker=breaker or CircuitBreaker(failure_threshold=5, clock=monotonic),
            max_retries=max_retries,
            retry_base_seconds=0.01,
            retry_max_wait_seconds=0.05,
            transport=httpx.MockTransport(handler),
            sleep=monotonic.sleep,
        )

    return _make
