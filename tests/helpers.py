"""
tests/helpers.py

Fakes shared across the suite: hand-advanced clocks and a route table that
stands in for the CourtListener API behind httpx.MockTransport.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from judgesync.core.models import CourtRecord, JudgeRecord, validate_job_payload
from judgesync.queue.worker import JobContext
from judgesync.sync.normalize import infer_court_type, slugify

BASE_URL = "https://courtlistener.test/api/rest/v4"
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# CLOCKS
# =============================================================================


class FakeClock:
    """Wall clock for the queue, pipelines and validator."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic clock for the rate limiter and circuit breaker; sleeping advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# =============================================================================
# FAKE COURTLISTENER
# =============================================================================


def page(results: List[Dict[str, Any]], next_url: Optional[str] = None) -> Dict[str, Any]:
    return {"count": len(results), "next": next_url, "previous": None, "results": results}


@dataclass
class Reply:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    def build(self) -> httpx.Response:
        if self.body is None:
            return httpx.Response(self.status, headers=self.headers)
        return httpx.Response(self.status, json=self.body, headers=self.headers)


class InOrder:
    """Serve replies in order; the last one repeats."""

    def __init__(self, *replies: Any):
        self.replies = list(replies)

    def next(self) -> Any:
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


class FakeCourtListener:
    """
    Route table for httpx.MockTransport, keyed by path relative to the API root
    (``"courts/ca1/"``). A route is a JSON body, a ``Reply``, an ``InOrder`` of
    either, or a callable taking the request. Unknown paths answer 404.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.split("/api/rest/v4/", 1)[-1]
        if path not in self.routes:
            return httpx.Response(404, json={"detail": "Not found."})
        route = self.routes[path]
        if isinstance(route, InOrder):
            route = route.next()
        elif callable(route):
            route = route(request)
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, Reply):
            return route.build()
        return httpx.Response(200, json=route)

    def calls(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/api/rest/v4/" + path))


# =============================================================================
# PIPELINES
# =============================================================================


def run_pipeline(
    queue: Any,
    pipeline: Any,
    entity_type: Any,
    external_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    priority: int = 0,
) -> Dict[str, Any]:
    """Enqueue one job and run it through ``pipeline`` with the context SyncWorker would build."""
    job = queue.enqueue(entity_type, external_id, priority=priority, payload=payload, dedupe=False)
    ctx = JobContext(job, validate_job_payload(job.entity_type, job.payload), queue, "test-worker")
    return pipeline.run(ctx)


def seed_court(store: Any, external_id: str, name: str, jurisdiction: str, now: datetime = T0) -> Any:
    court, _ = store.upsert_court(
        CourtRecord(
            external_id=external_id,
            name=name,
            slug=slugify(name),
            jurisdiction=jurisdiction,
            court_type=infer_court_type(name),
        ),
        now,
    )
    return court


def seed_judge(store: Any, external_id: str, name: str, now: datetime = T0, **fields: Any) -> Any:
    judge, _ = store.upsert_judge(
        JudgeRecord(external_id=external_id, name=name, slug=slugify(name), **fields),
        now,
    )
    return judge
