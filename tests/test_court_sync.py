"""Court sync pipeline: fetch by id and paginated discovery."""

from __future__ import annotations

import httpx
import pytest

from judgesync.core.error_taxonomy import JobCancelled, MalformedPayloadError, NonRetryableUpstreamError
from judgesync.core.models import CourtType, EntityType, SyncPhase
from judgesync.queue.manager import SyncQueueManager
from judgesync.storage.memory import InMemoryEntityStore
from judgesync.sync.court_sync import CourtSyncPipeline
from tests.helpers import BASE_URL, FakeClock, FakeCourtListener, page, run_pipeline

FIRST_CIRCUIT = {
    "id": "ca1",
    "full_name": "Court of Appeals for the First Circuit",
    "short_name": "First Circuit",
    "jurisdiction": "F",
    "url": "http://www.ca1.uscourts.gov/",
}
OHIO_SUPREME = {
    "id": "ohio",
    "full_name": "Supreme  Court of Ohio",
    "jurisdiction": "S",
    "url": "https://www.supremecourt.ohio.gov/",
}


@pytest.fixture
def pipeline(make_client, upstream: FakeCourtListener, entity_store: InMemoryEntityStore) -> CourtSyncPipeline:
    return CourtSyncPipeline(make_client(upstream), entity_store)


@pytest.fixture
def paged_courts(upstream: FakeCourtListener) -> FakeCourtListener:
    def _courts(request: httpx.Request) -> dict:
        if request.url.params.get("page") == "2":
            return page([OHIO_SUPREME, {"full_name": "Court Without An Id"}])
        return page([FIRST_CIRCUIT], next_url=f"{BASE_URL}/courts/?in_use=true&page=2")

    upstream.routes["courts/"] = _courts
    return upstream


class TestFetchById:
    def test_creates_court(self, pipeline, upstream, queue, entity_store):
        upstream.routes["courts/ca1/"] = FIRST_CIRCUIT

        result = run_pipeline(queue, pipeline, EntityType.COURT, "ca1")

        assert result["count"] == 1
        assert result["created"] == 1
        court = entity_store.get_court_by_external_id("ca1")
        assert court.name == "Court of Appeals for the First Circuit"
        assert court.slug == "court-of-appeals-for-the-first-circuit"
        assert court.jurisdiction == "US"
        assert court.court_type == CourtType.FEDERAL
        assert entity_store.get_progress(EntityType.COURT, court.id).phase == SyncPhase.COMPLETE

    def test_resync_updates_in_place(self, pipeline, upstream, queue, entity_store):
        upstream.routes["courts/ca1/"] = FIRST_CIRCUIT
        run_pipeline(queue, pipeline, EntityType.COURT, "ca1")

        result = run_pipeline(queue, pipeline, EntityType.COURT, "ca1")

        assert result["created"] == 0
        assert len(entity_store.list_courts()) == 1

    def test_unknown_court_is_permanent(self, pipeline, queue):
        with pytest.raises(NonRetryableUpstreamError) as exc_info:
            run_pipeline(queue, pipeline, EntityType.COURT, "nowhere")

        assert exc_info.value.status == 404

    def test_malformed_court_is_permanent(self, pipeline, upstream, queue):
        upstream.routes["courts/bad/"] = {"full_name": "Missing Id"}

        with pytest.raises(MalformedPayloadError):
            run_pipeline(queue, pipeline, EntityType.COURT, "bad")


class TestDiscovery:
    def test_pages_through_all_courts(self, pipeline, paged_courts, queue, entity_store):
        result = run_pipeline(queue, pipeline, EntityType.COURT)

        assert result == {"count": 2, "created": 2, "skipped": 0, "errors": 1}
        ohio = entity_store.get_court_by_external_id("ohio")
        assert ohio.name == "Supreme Court of Ohio"
        assert ohio.jurisdiction == "OH"
        assert ohio.court_type == CourtType.STATE
        assert paged_courts.calls("courts/") == 2

    def test_jurisdiction_filter(self, pipeline, paged_courts, queue, entity_store):
        result = run_pipeline(queue, pipeline, EntityType.COURT, payload={"jurisdiction": "Ohio"})

        assert result["count"] == 1
        assert [c.external_id for c in entity_store.list_courts()] == ["ohio"]

    def test_recently_synced_courts_are_skipped(self, pipeline, paged_courts, queue, clock: FakeClock):
        run_pipeline(queue, pipeline, EntityType.COURT)

        again = run_pipeline(queue, pipeline, EntityType.COURT)
        forced = run_pipeline(queue, pipeline, EntityType.COURT, payload={"force_refresh": True})
        clock.advance(days=8)
        stale = run_pipeline(queue, pipeline, EntityType.COURT)

        assert (again["count"], again["skipped"]) == (0, 2)
        assert (forced["count"], forced["created"]) == (2, 0)
        assert (stale["count"], stale["skipped"]) == (2, 0)

    def test_discovery_honours_cancellation(self, pipeline, paged_courts, queue: SyncQueueManager, entity_store):
        def _cancel_first(request: httpx.Request) -> dict:
            for job in queue.list_jobs():
                queue.cancel(job.id)
            return page([FIRST_CIRCUIT, OHIO_SUPREME])

        paged_courts.routes["courts/"] = _cancel_first

        with pytest.raises(JobCancelled):
            run_pipeline(queue, pipeline, EntityType.COURT)

        assert entity_store.list_courts() == []
