"""Admin aggregates: queue, upstream, sync progress and data quality."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from judgesync.admin import (
    data_quality_overview,
    queue_overview,
    sync_progress_for,
    sync_progress_overview,
    upstream_status,
)
from judgesync.clients.circuit_breaker import CircuitBreaker
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.core.models import EntityType, IssueSeverity, IssueType, SyncPhase, SyncProgress, ValidationIssue
from judgesync.quality.reports import build_report
from tests.helpers import T0


def progress(phase: SyncPhase, entity_type: EntityType = EntityType.JUDGE, **fields) -> SyncProgress:
    return SyncProgress(entity_type=entity_type, entity_id=uuid4(), phase=phase, **fields)


class TestQueueOverview:
    def test_empty_queue_has_no_messages(self, queue):
        overview = queue_overview(queue)

        assert overview["total"] == 0
        assert overview["messages"] == []

    def test_counts_and_messages(self, queue):
        queue.enqueue("court", "ca1")
        queue.enqueue("court", "ca2")
        queue.enqueue("judge", "1213")
        running = queue.claim("w1")
        failed = queue.claim("w1")
        queue.fail(failed, "w1", "gone", permanent=True)

        overview = queue_overview(queue)

        assert (overview["pending"], overview["running"], overview["failed"]) == (1, 1, 1)
        assert overview["total"] == 3
        assert overview["messages"] == ["1 job failed", "1 job running", "1 job pending"]
        assert running.status.value == "running"


class TestUpstreamStatus:
    def test_fresh_limiter_and_closed_breaker(self, monotonic):
        limiter = RateLimiter(hourly_limit=100, safety_ratio=1.0, clock=monotonic, sleep=monotonic.sleep)
        breaker = CircuitBreaker(clock=monotonic)

        status = upstream_status(limiter, breaker)

        assert status == {
            "upstream": "courtlistener",
            "utilization_percent": 0.0,
            "remaining": 100,
            "reset_in_seconds": 0.0,
            "breaker_state": "closed",
            "breaker_failures": 0,
        }

    def test_reports_usage_and_open_breaker(self, monotonic):
        limiter = RateLimiter(hourly_limit=100, safety_ratio=1.0, clock=monotonic, sleep=monotonic.sleep)
        breaker = CircuitBreaker(failure_threshold=2, cooldown_seconds=900, clock=monotonic)
        for _ in range(25):
            limiter.acquire()
        breaker.record_failure()
        breaker.record_failure()
        monotonic.advance(600)

        status = upstream_status(limiter, breaker)

        assert status["utilization_percent"] == 25.0
        assert status["remaining"] == 75
        assert status["reset_in_seconds"] == 3000.0
        assert status["breaker_state"] == "open"
        assert status["breaker_failures"] == 2


class TestSyncProgressOverview:
    def test_groups_by_phase(self, entity_store):
        entity_store.save_progress(progress(SyncPhase.COMPLETE, is_analytics_ready=True))
        entity_store.save_progress(progress(SyncPhase.OPINIONS, error_count=2))
        entity_store.save_progress(progress(SyncPhase.OPINIONS))
        entity_store.save_progress(progress(SyncPhase.COMPLETE, entity_type=EntityType.COURT))

        overview = sync_progress_overview(entity_store)

        assert overview["total"] == 4
        assert overview["by_phase"]["complete"] == 2
        assert overview["by_phase"]["opinions"] == 2
        assert overview["by_phase"]["discovery"] == 0
        assert set(overview["by_phase"]) == {p.value for p in SyncPhase}
        assert overview["analytics_ready"] == 1
        assert overview["with_errors"] == 1

    def test_filter_by_entity_type(self, entity_store):
        entity_store.save_progress(progress(SyncPhase.COMPLETE, entity_type=EntityType.COURT))
        entity_store.save_progress(progress(SyncPhase.OPINIONS))

        overview = sync_progress_overview(entity_store, EntityType.COURT)

        assert overview["total"] == 1
        assert overview["by_phase"]["complete"] == 1

    def test_single_entity(self, entity_store):
        row = progress(
            SyncPhase.DOCKETS,
            opinions_count=3,
            error_count=1,
            last_error="1 malformed document(s) skipped",
            last_error_at=T0,
            last_synced_at=T0,
        )
        entity_store.save_progress(row)

        assert sync_progress_for(entity_store, EntityType.JUDGE, uuid4()) is None
        detail = sync_progress_for(entity_store, EntityType.JUDGE, row.entity_id)
        assert detail["entity_id"] == str(row.entity_id)
        assert detail["phase"] == "dockets"
        assert detail["opinions_count"] == 3
        assert detail["last_error"] == "1 malformed document(s) skipped"
        assert detail["last_error_at"] == T0.isoformat()


class TestDataQualityOverview:
    def test_no_reports_yet(self, report_store):
        overview = data_quality_overview(report_store)

        assert overview == {"last_validation": None, "summary": None, "health_score": 100.0, "messages": []}

    def test_latest_report_drives_summary(self, report_store):
        critical = ValidationIssue(
            type=IssueType.ORPHANED_RECORD,
            severity=IssueSeverity.CRITICAL,
            entity="assignment",
            message="assignment points at a missing court",
            suggested_action="resync the judge",
        )
        report_store.append(build_report("val_old", [], T0, T0 + timedelta(seconds=1)))
        report_store.append(build_report("val_new", [critical], T0 + timedelta(hours=1), T0 + timedelta(hours=1)))

        overview = data_quality_overview(report_store)

        assert overview["validation_id"] == "val_new"
        assert overview["critical_issues"] == 1
        assert overview["summary"].startswith("CRITICAL")
        assert overview["health_score"] == 99.0
        assert overview["messages"] == ["1 critical data-quality issues"]
