"""
JudgeSync - Decision Sync Pipeline

Pulls a judge's authored opinions and assigned dockets into ``cases``.

The per-judge document cap is split between the two sources: opinions get the
first half, dockets get whatever the opinions left unused.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import ValidationError

from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.core.error_taxonomy import InvalidJobPayload
from judgesync.core.models import (
    DecisionJobPayload,
    DecisionRecord,
    DecisionSource,
    EntityType,
    Judge,
    UpstreamDocket,
    UpstreamOpinion,
)
from judgesync.queue.worker import JobContext
from judgesync.storage.base import EntityStore
from judgesync.sync.normalize import collapse_whitespace
from judgesync.sync.progress import record_progress_error, update_judge_progress

logger = logging.getLogger(__name__)

OPINION_PREFIX = "opinion:"
DOCKET_PREFIX = "docket:"


def split_document_cap(cap: int) -> tuple[int, int]:
    """Opinion and docket shares of a total cap (opinions round up)."""
    opinions = (cap + 1) // 2
    return opinions, cap - opinions


class DecisionSyncPipeline:
    def __init__(
        self,
        client: CourtListenerClient,
        store: EntityStore,
        max_documents_per_judge: int = 500,
        min_cases_for_analytics: int = 500,
    ):
        self.client = client
        self.store = store
        self.max_documents_per_judge = max_documents_per_judge
        self.min_cases_for_analytics = min_cases_for_analytics

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        payload: DecisionJobPayload = ctx.payload
        if not ctx.external_id:
            raise InvalidJobPayload("decision jobs need the judge's external id")

        judge = self.store.get_judge_by_external_id(ctx.external_id)
        if judge is None:
            ctx.enqueue(
                EntityType.JUDGE,
                ctx.external_id,
                priority=ctx.job.priority,
                payload={"reason": "decision_sync_without_judge"},
            )
            raise InvalidJobPayload(f"judge {ctx.external_id} has not been synced yet")

        cap = min(payload.max_documents or self.max_documents_per_judge, self.max_documents_per_judge)
        opinion_cap, _ = split_document_cap(cap)
        court_ids: Dict[str, Optional[UUID]] = {}
        stats = {"count": 0, "opinions": 0, "dockets": 0, "errors": 0}

        for raw in self.client.iter_opinions(judge.external_id, since=payload.since, max_items=opinion_cap):
            ctx.check_cancelled()
            try:
                record = self._opinion_record(judge, court_ids, UpstreamOpinion.from_api(raw))
            except ValidationError as e:
                stats["errors"] += 1
                logger.warning(f"Skipping malformed opinion: {e.error_count()} invalid field(s)")
                continue
            self.store.upsert_decision(record, ctx.now())
            stats["opinions"] += 1

        docket_cap = cap - stats["opinions"]
        if docket_cap > 0:
            for raw in self.client.iter_dockets(judge.external_id, since=payload.since, max_items=docket_cap):
                ctx.check_cancelled()
                try:
                    record = self._docket_record(judge, court_ids, UpstreamDocket.model_validate(raw))
                except ValidationError as e:
                    stats["errors"] += 1
                    logger.warning(f"Skipping malformed docket: {e.error_count()} invalid field(s)")
                    continue
                self.store.upsert_decision(record, ctx.now())
                stats["dockets"] += 1

        stats["count"] = stats["opinions"] + stats["dockets"]
        now = ctx.now()
        total = self.store.recalculate_case_count(judge.id, now) or 0
        progress = update_judge_progress(
            self.store,
            judge.id,
            now,
            self.min_cases_for_analytics,
            opinions_count=self.store.count_cases_for_judge(judge.id, DecisionSource.OPINION),
            dockets_count=self.store.count_cases_for_judge(judge.id, DecisionSource.DOCKET),
            total_cases_count=total,
        )
        if stats["errors"]:
            progress = record_progress_error(
                self.store, EntityType.JUDGE, judge.id, f"{stats['errors']} malformed document(s) skipped", now
            )
        stats["total_cases"] = total

        logger.info(
            f"Synced {stats['count']} decision(s) for judge {judge.external_id} "
            f"({stats['opinions']} opinions, {stats['dockets']} dockets); "
            f"total {total}, analytics ready: {progress.is_analytics_ready}",
            extra={"external_id": judge.external_id, "count": stats["count"]},
        )
        return stats

    # -------------------------------------------------------------------------
    # Mapping
    # -------------------------------------------------------------------------

    def _court_id(
        self, external_id: Optional[str], judge: Judge, cache: Dict[str, Optional[UUID]]
    ) -> Optional[UUID]:
        if not external_id:
            return judge.court_id
        if external_id not in cache:
            court = self.store.get_court_by_external_id(external_id)
            cache[external_id] = court.id if court else None
        return cache[external_id] or judge.court_id

    def _opinion_record(
        self, judge: Judge, court_ids: Dict[str, Optional[UUID]], opinion: UpstreamOpinion
    ) -> DecisionRecord:
        return DecisionRecord(
            external_id=f"{OPINION_PREFIX}{opinion.id}",
            case_name=collapse_whitespace(opinion.case_name),
            docket_number=collapse_whitespace(opinion.docket_number) or None,
            judge_id=judge.id,
            court_id=self._court_id(opinion.court, judge, court_ids),
            decision_date=opinion.date_filed,
            outcome=collapse_whitespace(opinion.disposition) or None,
            source=DecisionSource.OPINION,
            jurisdiction=judge.jurisdiction,
        )

    def _docket_record(
        self, judge: Judge, court_ids: Dict[str, Optional[UUID]], docket: UpstreamDocket
    ) -> DecisionRecord:
        return DecisionRecord(
            external_id=f"{DOCKET_PREFIX}{docket.id}",
            case_name=collapse_whitespace(docket.case_name),
            docket_number=collapse_whitespace(docket.docket_number) or None,
            judge_id=judge.id,
            court_id=self._court_id(docket.court_id, judge, court_ids),
            decision_date=docket.date_terminated or docket.date_filed,
            outcome=collapse_whitespace(docket.disposition) or None,
            source=DecisionSource.DOCKET,
            jurisdiction=judge.jurisdiction,
        )
