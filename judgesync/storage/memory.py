"""
JudgeSync - In-Memory Stores

Thread-safe stand-ins for the Postgres stores. One ``threading.Lock`` per
store turns every operation into a compare-and-set, which gives the job
store the same exactly-once claim guarantee as ``FOR UPDATE SKIP LOCKED``.

Used by ``--backend memory`` dry runs and by the test suite.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID, uuid4

from judgesync.core.models import (
    ACTIVE_STATUSES,
    AssignmentRecord,
    Court,
    CourtAssignment,
    CourtRecord,
    Decision,
    DecisionRecord,
    DecisionSource,
    EntitySnapshot,
    EntityType,
    JobStatus,
    Judge,
    JudgeRecord,
    SyncJob,
    SyncOperation,
    SyncProgress,
    ValidationReport,
)
from judgesync.storage.base import CASE_REFERENCE_FIELDS


# =============================================================================
# Jobs
# =============================================================================


class InMemoryJobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[int, SyncJob] = {}
        self._ids = itertools.count(1)

    def insert(
        self,
        *,
        entity_type: EntityType,
        entity_external_id: Optional[str],
        operation: SyncOperation,
        priority: int,
        payload: Dict[str, Any],
        max_attempts: int,
        scheduled_for: datetime,
        now: datetime,
        dedupe: bool = False,
    ) -> Tuple[SyncJob, bool]:
        with self._lock:
            if dedupe:
                for job in self._jobs.values():
                    if (
                        job.entity_type == entity_type
                        and job.entity_external_id == entity_external_id
                        and job.status in ACTIVE_STATUSES
                    ):
                        return job, False
            job = SyncJob(
                id=next(self._ids),
                entity_type=entity_type,
                entity_external_id=entity_external_id,
                operation=operation,
                priority=priority,
                status=JobStatus.PENDING,
                max_attempts=max_attempts,
                scheduled_for=scheduled_for,
                payload=dict(payload),
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            return job, True

    def get(self, job_id: int) -> Optional[SyncJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def claim_next(self, worker_id: str, now: datetime) -> Optional[SyncJob]:
        with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING and job.scheduled_for <= now
            ]
            if not eligible:
                return None
            best = min(eligible, key=lambda j: (-j.priority, j.scheduled_for, j.id))
            claimed = best.model_copy(
                update={
                    "status": JobStatus.RUNNING,
                    "claimed_by": worker_id,
                    "claimed_at": now,
                    "updated_at": now,
                }
            )
            self._jobs[claimed.id] = claimed
            return claimed

    def finish(
        self,
        job_id: int,
        worker_id: str,
        *,
        status: JobStatus,
        attempt_count: int,
        scheduled_for: Optional[datetime],
        last_error: Optional[str],
        now: datetime,
    ) -> Optional[SyncJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING or job.claimed_by != worker_id:
                return None
            update: Dict[str, Any] = {
                "status": status,
                "attempt_count": attempt_count,
                "last_error": last_error,
                "updated_at": now,
            }
            if status == JobStatus.PENDING:
                update.update(claimed_by=None, claimed_at=None, scheduled_for=scheduled_for)
            else:
                update["completed_at"] = now
            updated = job.model_copy(update=update)
            self._jobs[job_id] = updated
            return updated

    def cancel(self, job_id: int, now: datetime) -> Optional[SyncJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in ACTIVE_STATUSES:
                return None
            updated = job.model_copy(
                update={"status": JobStatus.CANCELLED, "updated_at": now, "completed_at": now}
            )
            self._jobs[job_id] = updated
            return updated

    def list_stale(self, claimed_before: datetime) -> List[SyncJob]:
        with self._lock:
            return [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.RUNNING
                and job.claimed_at is not None
                and job.claimed_at < claimed_before
            ]

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[SyncJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: (-j.priority, j.scheduled_for, j.id))
        return jobs[:limit]

    def counts_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts

    def purge(self, statuses: Iterable[JobStatus], finished_before: datetime) -> int:
        wanted = set(statuses)
        with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in wanted and job.updated_at < finished_before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)


# =============================================================================
# Entities
# =============================================================================


class InMemoryEntityStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.courts: Dict[UUID, Court] = {}
        self.judges: Dict[UUID, Judge] = {}
        self.assignments: Dict[UUID, CourtAssignment] = {}
        self.cases: Dict[UUID, Decision] = {}
        self.progress: Dict[Tuple[EntityType, UUID], SyncProgress] = {}

    @staticmethod
    def _find(rows: Dict[UUID, Any], external_id: str) -> Optional[Any]:
        for row in rows.values():
            if row.external_id == external_id:
                return row
        return None

    def _upsert(self, rows: Dict[UUID, Any], model: Any, record: Any, now: datetime) -> Tuple[Any, bool]:
        fields = dict(record)
        with self._lock:
            existing = self._find(rows, record.external_id)
            if existing is None:
                row = model(id=uuid4(), created_at=now, updated_at=now, last_synced_at=now, **fields)
                rows[row.id] = row
                return row, True
            row = existing.model_copy(update={**fields, "updated_at": now, "last_synced_at": now})
            rows[row.id] = row
            return row, False

    # Courts

    def upsert_court(self, record: CourtRecord, now: datetime) -> Tuple[Court, bool]:
        return self._upsert(self.courts, Court, record, now)

    def get_court_by_external_id(self, external_id: str) -> Optional[Court]:
        with self._lock:
            return self._find(self.courts, external_id)

    def list_courts(self, jurisdiction: Optional[str] = None) -> List[Court]:
        with self._lock:
            courts = list(self.courts.values())
        if jurisdiction:
            courts = [c for c in courts if (c.jurisdiction or "").upper() == jurisdiction.upper()]
        return sorted(courts, key=lambda c: c.name)

    # Judges

    def upsert_judge(self, record: JudgeRecord, now: datetime) -> Tuple[Judge, bool]:
        return self._upsert(self.judges, Judge, record, now)

    def get_judge(self, judge_id: UUID) -> Optional[Judge]:
        with self._lock:
            return self.judges.get(judge_id)

    def get_judge_by_external_id(self, external_id: str) -> Optional[Judge]:
        with self._lock:
            return self._find(self.judges, external_id)

    def list_judges(self) -> List[Judge]:
        with self._lock:
            return sorted(self.judges.values(), key=lambda j: j.name)

    # Assignments

    def upsert_assignment(self, judge_id: UUID, record: AssignmentRecord) -> CourtAssignment:
        with self._lock:
            for existing in self.assignments.values():
                if (
                    existing.judge_id == judge_id
                    and existing.court_id == record.court_id
                    and existing.start_date == record.start_date
                ):
                    updated = existing.model_copy(update=record.model_dump())
                    self.assignments[updated.id] = updated
                    return updated
            row = CourtAssignment(id=uuid4(), judge_id=judge_id, **record.model_dump())
            self.assignments[row.id] = row
            return row

    def list_assignments(self, judge_id: Optional[UUID] = None) -> List[CourtAssignment]:
        with self._lock:
            rows = list(self.assignments.values())
        if judge_id is not None:
            rows = [a for a in rows if a.judge_id == judge_id]
        return sorted(rows, key=lambda a: (str(a.judge_id), a.start_date))

    # Decisions

    def upsert_decision(self, record: DecisionRecord, now: datetime) -> Tuple[Decision, bool]:
        return self._upsert(self.cases, Decision, record, now)

    def list_cases(self) -> List[Decision]:
        with self._lock:
            return list(self.cases.values())

    def count_cases_for_judge(self, judge_id: UUID, source: Optional[DecisionSource] = None) -> int:
        with self._lock:
            return sum(
                1
                for c in self.cases.values()
                if c.judge_id == judge_id and (source is None or c.source == source)
            )

    # Repairs

    def recalculate_case_count(self, judge_id: UUID, now: datetime) -> Optional[int]:
        with self._lock:
            judge = self.judges.get(judge_id)
            if judge is None:
                return None
            count = self.count_cases_for_judge(judge_id)
            if judge.total_cases != count:
                self.judges[judge_id] = judge.model_copy(
                    update={"total_cases": count, "updated_at": now}
                )
            return count

    def nullify_case_reference(self, case_id: UUID, field: str, now: datetime) -> bool:
        if field not in CASE_REFERENCE_FIELDS:
            raise ValueError(f"not a case reference: {field}")
        with self._lock:
            case = self.cases.get(case_id)
            if case is None or getattr(case, field) is None:
                return False
            self.cases[case_id] = case.model_copy(update={field: None, "updated_at": now})
            return True

    def set_case_outcome(self, case_id: UUID, outcome: str, now: datetime) -> bool:
        with self._lock:
            case = self.cases.get(case_id)
            if case is None or case.outcome == outcome:
                return False
            self.cases[case_id] = case.model_copy(update={"outcome": outcome, "updated_at": now})
            return True

    # Progress

    def get_progress(self, entity_type: EntityType, entity_id: UUID) -> Optional[SyncProgress]:
        with self._lock:
            return self.progress.get((entity_type, entity_id))

    def save_progress(self, progress: SyncProgress) -> SyncProgress:
        with self._lock:
            self.progress[(progress.entity_type, progress.entity_id)] = progress
        return progress

    def list_progress(self, entity_type: Optional[EntityType] = None) -> List[SyncProgress]:
        with self._lock:
            rows = list(self.progress.values())
        return [p for p in rows if entity_type is None or p.entity_type == entity_type]

    def snapshot(self) -> EntitySnapshot:
        with self._lock:
            return EntitySnapshot(
                courts=list(self.courts.values()),
                judges=list(self.judges.values()),
                assignments=list(self.assignments.values()),
                cases=list(self.cases.values()),
            )


# =============================================================================
# Reports
# =============================================================================


class InMemoryReportStore:
    """Append-only list of validation reports."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reports: List[ValidationReport] = []

    def append(self, report: ValidationReport) -> None:
        with self._lock:
            self._reports.append(report)

    def latest(self, limit: int = 1) -> List[ValidationReport]:
        with self._lock:
            return list(reversed(self._reports[-limit:])) if limit > 0 else []
