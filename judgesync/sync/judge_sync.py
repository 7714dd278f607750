"""
JudgeSync - Judge Sync Pipeline

Discovery jobs page through people and enqueue one fetch-by-id job per judge.
Fetch-by-id jobs upsert the judge with its education and political
affiliation history, derive court assignments from the position history,
and hand off to the decision pipeline.

Assignment rules:
    current position (first open one, else most recent)  -> primary
    other open positions                                 -> visiting, or temporary
                                                            for acting / pro tem titles
    terminated positions                                 -> primary with end_date, or
                                                            retired when the reason says so
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, Iterable, Iterator, Optional, Sequence

from pydantic import ValidationError

from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.core.error_taxonomy import MalformedPayloadError, upstream_error_for
from judgesync.core.models import (
    AssignmentRecord,
    AssignmentType,
    Court,
    EntityType,
    JudgeJobPayload,
    JudgeRecord,
    UpstreamPerson,
    UpstreamPosition,
)
from judgesync.queue.worker import JobContext
from judgesync.storage.base import EntityStore
from judgesync.sync.normalize import (
    canonical_jurisdiction,
    normalize_affiliations,
    normalize_educations,
    normalize_person_name,
    slugify,
)
from judgesync.sync.progress import update_judge_progress

logger = logging.getLogger(__name__)

TEMPORARY_TITLE_RE = re.compile(r"\b(acting|temporary|interim|pro[\s-]?tem(?:pore)?)\b", re.IGNORECASE)

# CourtListener position_type codes for acting roles start with "act-".
TEMPORARY_POSITION_PREFIX = "act-"


# =============================================================================
# Position rules (pure)
# =============================================================================


def current_position(positions: Sequence[UpstreamPosition]) -> Optional[UpstreamPosition]:
    """First position without a termination date, else the most recently started one."""
    candidates = [p for p in positions if p.court]
    for position in candidates:
        if position.date_termination is None:
            return position
    dated = [p for p in candidates if p.effective_start is not None]
    if not dated:
        return None
    return max(dated, key=lambda p: p.effective_start or date.min)


def is_temporary(position: UpstreamPosition) -> bool:
    if position.position_type and position.position_type.startswith(TEMPORARY_POSITION_PREFIX):
        return True
    return bool(position.job_title and TEMPORARY_TITLE_RE.search(position.job_title))


def is_retirement(position: UpstreamPosition) -> bool:
    return "retire" in (position.termination_reason or "").lower()


def classify_position(position: UpstreamPosition, is_current: bool) -> AssignmentType:
    if position.date_termination is not None:
        return AssignmentType.RETIRED if is_retirement(position) else AssignmentType.PRIMARY
    if is_current:
        return AssignmentType.PRIMARY
    return AssignmentType.TEMPORARY if is_temporary(position) else AssignmentType.VISITING


def position_title(position: UpstreamPosition) -> Optional[str]:
    return position.job_title or position.position_type


# =============================================================================
# Pipeline
# =============================================================================


class JudgeSyncPipeline:
    def __init__(
        self,
        client: CourtListenerClient,
        store: EntityStore,
        discovery_limit: int = 250,
        min_cases_for_analytics: int = 500,
    ):
        self.client = client
        self.store = store
        self.discovery_limit = discovery_limit
        self.min_cases_for_analytics = min_cases_for_analytics

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        if ctx.external_id:
            return self.sync_judge(ctx, ctx.external_id)
        return self.discover(ctx)

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def _people(self, payload: JudgeJobPayload, limit: int) -> Iterator[Dict[str, Any]]:
        if not payload.jurisdiction:
            yield from self.client.iter_people(max_items=limit)
            return
        # Jurisdiction-scoped discovery walks the known courts of that jurisdiction.
        courts: Iterable[Court] = self.store.list_courts(canonical_jurisdiction(payload.jurisdiction))
        remaining = limit
        for court in courts:
            for raw in self.client.iter_people(court_id=court.external_id, max_items=remaining):
                yield raw
                remaining -= 1
            if remaining <= 0:
                return

    def discover(self, ctx: JobContext) -> Dict[str, Any]:
        """Enqueue a fetch-by-id job per judge, at most ``discovery_limit`` per run."""
        payload: JudgeJobPayload = ctx.payload
        limit = payload.discovery_limit or self.discovery_limit
        seen: set[str] = set()
        stats = {"count": 0, "discovered": 0, "errors": 0}

        for raw in self._people(payload, limit):
            ctx.check_cancelled()
            try:
                person = UpstreamPerson.model_validate(raw)
            except ValidationError as e:
                stats["errors"] += 1
                logger.warning(f"Skipping malformed person item: {e.error_count()} invalid field(s)")
                continue
            if person.id in seen:
                continue
            seen.add(person.id)
            stats["discovered"] += 1
            ctx.enqueue(
                EntityType.JUDGE,
                person.id,
                priority=ctx.job.priority,
                payload={"reason": "discovery", "sync_decisions": payload.sync_decisions},
            )
            stats["count"] += 1

        logger.info(
            f"Judge discovery finished: {stats['discovered']} found, {stats['count']} queued, "
            f"{stats['errors']} errors",
            extra={"count": stats["count"]},
        )
        return stats

    # -------------------------------------------------------------------------
    # Fetch by id
    # -------------------------------------------------------------------------

    def _fetch_person(self, external_id: str) -> UpstreamPerson:
        raw = self.client.get_person(external_id)
        if raw is None:
            raise upstream_error_for(404, f"person {external_id} not found upstream")
        try:
            person = UpstreamPerson.model_validate(raw)
            if not person.positions:
                # The people endpoint sometimes links positions instead of embedding them.
                positions = [UpstreamPosition.model_validate(p) for p in self.client.get_positions(external_id)]
                person = person.model_copy(update={"positions": positions})
        except ValidationError as e:
            raise MalformedPayloadError(f"person {external_id}: {e.error_count()} invalid field(s)") from e
        return person

    def _resolve_courts(self, ctx: JobContext, positions: Sequence[UpstreamPosition]) -> Dict[str, Court]:
        courts: Dict[str, Court] = {}
        for position in positions:
            if not position.court or position.court in courts:
                continue
            court = self.store.get_court_by_external_id(position.court)
            if court is None:
                logger.warning(
                    f"Unknown court {position.court}; skipping its positions and queueing a court sync",
                    extra={"external_id": position.court},
                )
                ctx.enqueue(EntityType.COURT, position.court, payload={"reason": "unknown_court"})
                continue
            courts[position.court] = court
        return courts

    def sync_judge(self, ctx: JobContext, external_id: str) -> Dict[str, Any]:
        payload: JudgeJobPayload = ctx.payload
        now = ctx.now()
        person = self._fetch_person(external_id)
        ctx.check_cancelled()
        courts = self._resolve_courts(ctx, person.positions)
        current = current_position(person.positions)
        current_court = courts.get(current.court) if current and current.court else None

        name = normalize_person_name(person.full_name)
        existing = self.store.get_judge_by_external_id(external_id)
        record = JudgeRecord(
            external_id=external_id,
            name=name,
            slug=slugify(name) or slugify(f"judge-{external_id}"),
            jurisdiction=(
                current_court.jurisdiction if current_court else canonical_jurisdiction(payload.jurisdiction)
            ),
            court_id=current_court.id if current_court else (existing.court_id if existing else None),
            appointed_date=(current.date_confirmation or current.effective_start) if current else None,
            education=normalize_educations(person.educations),
            political_affiliation=normalize_affiliations(person.political_affiliations),
        )
        if record.jurisdiction is None and existing is not None:
            record = record.model_copy(update={"jurisdiction": existing.jurisdiction})

        ctx.check_cancelled()
        judge, created = self.store.upsert_judge(record, now)

        assignments = 0
        for position in person.positions:
            court = courts.get(position.court or "")
            start = position.effective_start
            if court is None or start is None:
                continue
            ctx.check_cancelled()
            self.store.upsert_assignment(
                judge.id,
                AssignmentRecord(
                    court_id=court.id,
                    assignment_type=classify_position(position, position is current),
                    start_date=start,
                    end_date=position.date_termination,
                    position_title=position_title(position),
                ),
            )
            assignments += 1

        update_judge_progress(
            self.store,
            judge.id,
            now,
            self.min_cases_for_analytics,
            has_positions=assignments > 0,
            has_details=bool(judge.education or judge.political_affiliation),
        )

        if payload.sync_decisions:
            ctx.enqueue(
                EntityType.DECISION,
                external_id,
                priority=ctx.job.priority,
                payload={"reason": "judge_sync"},
            )

        logger.info(
            f"{'Created' if created else 'Updated'} judge {external_id} with {assignments} assignment(s)",
            extra={"external_id": external_id, "count": assignments},
        )
        return {
            "count": 1,
            "created": int(created),
            "assignments": assignments,
            "unresolved_courts": sorted({p.court for p in person.positions if p.court and p.court not in courts}),
        }

