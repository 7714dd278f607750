"""
JudgeSync - Court Sync Pipeline

Fetch-by-id or paginated discovery of courts. Courts are the anchor every
judge assignment and case resolves against, so the full sync runs this first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.core.error_taxonomy import MalformedPayloadError, upstream_error_for
from judgesync.core.models import Court, CourtJobPayload, CourtRecord, UpstreamCourt
from judgesync.queue.worker import JobContext
from judgesync.storage.base import EntityStore
from judgesync.sync.normalize import canonical_jurisdiction, infer_court_type, normalize_court_name, slugify
from judgesync.sync.progress import mark_court_synced

logger = logging.getLogger(__name__)


def court_record_from_upstream(upstream: UpstreamCourt) -> CourtRecord:
    name = normalize_court_name(upstream.display_name)
    return CourtRecord(
        external_id=upstream.id,
        name=name,
        slug=slugify(name) or slugify(upstream.id),
        jurisdiction=canonical_jurisdiction(upstream.jurisdiction, name),
        court_type=infer_court_type(name, upstream.jurisdiction),
        url=upstream.url,
    )


class CourtSyncPipeline:
    """Upserts courts keyed by CourtListener id."""

    def __init__(
        self,
        client: CourtListenerClient,
        store: EntityStore,
        refresh_interval: timedelta = timedelta(days=7),
    ):
        self.client = client
        self.store = store
        self.refresh_interval = refresh_interval

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        payload: CourtJobPayload = ctx.payload
        if ctx.external_id:
            court, created = self.sync_court(ctx.external_id, ctx.now())
            return {"count": 1, "created": int(created), "court_id": str(court.id)}
        return self.discover(ctx, payload)

    def sync_court(self, external_id: str, now: datetime) -> Tuple[Court, bool]:
        raw = self.client.get_court(external_id)
        if raw is None:
            raise upstream_error_for(404, f"court {external_id} not found upstream")
        try:
            upstream = UpstreamCourt.model_validate(raw)
        except ValidationError as e:
            raise MalformedPayloadError(f"court {external_id}: {e.error_count()} invalid field(s)") from e
        return self._upsert(upstream, now)

    def _upsert(self, upstream: UpstreamCourt, now: datetime) -> Tuple[Court, bool]:
        court, created = self.store.upsert_court(court_record_from_upstream(upstream), now)
        mark_court_synced(self.store, court.id, now)
        logger.debug(
            f"{'Created' if created else 'Updated'} court {court.external_id}",
            extra={"external_id": court.external_id},
        )
        return court, created

    def _fresh(self, external_id: str, now: datetime) -> bool:
        existing = self.store.get_court_by_external_id(external_id)
        return (
            existing is not None
            and existing.last_synced_at is not None
            and now - existing.last_synced_at < self.refresh_interval
        )

    def discover(self, ctx: JobContext, payload: CourtJobPayload) -> Dict[str, Any]:
        """
        Page through every in-use court.

        With a jurisdiction only matching courts are kept. Without
        ``force_refresh`` courts synced within ``refresh_interval`` are skipped.
        A bad item is counted and logged; the run continues.
        """
        wanted: Optional[str] = canonical_jurisdiction(payload.jurisdiction) if payload.jurisdiction else None
        now = ctx.now()
        stats = {"count": 0, "created": 0, "skipped": 0, "errors": 0}

        for raw in self.client.iter_courts():
            ctx.check_cancelled()
            try:
                upstream = UpstreamCourt.model_validate(raw)
            except ValidationError as e:
                stats["errors"] += 1
                logger.warning(f"Skipping malformed court item: {e.error_count()} invalid field(s)")
                continue

            record = court_record_from_upstream(upstream)
            if wanted and record.jurisdiction != wanted:
                continue
            if not payload.force_refresh and self._fresh(record.external_id, now):
                stats["skipped"] += 1
                continue

            _, created = self._upsert(upstream, now)
            stats["count"] += 1
            stats["created"] += int(created)

        logger.info(
            f"Court discovery finished: {stats['count']} synced, {stats['created']} new, "
            f"{stats['skipped']} fresh, {stats['errors']} errors",
            extra={"count": stats["count"]},
        )
        return stats
