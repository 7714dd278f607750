"""
JudgeSync - Store Protocols

Primitive, individually atomic operations the queue manager, pipelines and
validator are written against. ``judgesync.storage.postgres`` implements them
on psycopg; ``judgesync.storage.memory`` implements them under a lock for dry
runs and tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple
from uuid import UUID

from judgesync.core.models import (
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


class JobStore(Protocol):
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
        """Insert a pending job. With ``dedupe`` an active job for the same entity is returned instead."""
        ...

    def get(self, job_id: int) -> Optional[SyncJob]: ...

    def claim_next(self, worker_id: str, now: datetime) -> Optional[SyncJob]:
        """Atomically move the best eligible pending job to running for ``worker_id``."""
        ...

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
        """Leave ``running``; only succeeds while ``worker_id`` still holds the claim."""
        ...

    def cancel(self, job_id: int, now: datetime) -> Optional[SyncJob]: ...

    def list_stale(self, claimed_before: datetime) -> List[SyncJob]: ...

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[SyncJob]: ...

    def counts_by_status(self) -> Dict[str, int]: ...

    def purge(self, statuses: Iterable[JobStatus], finished_before: datetime) -> int: ...


class EntityStore(Protocol):
    # Courts
    def upsert_court(self, record: CourtRecord, now: datetime) -> Tuple[Court, bool]: ...

    def get_court_by_external_id(self, external_id: str) -> Optional[Court]: ...

    def list_courts(self, jurisdiction: Optional[str] = None) -> List[Court]: ...

    # Judges
    def upsert_judge(self, record: JudgeRecord, now: datetime) -> Tuple[Judge, bool]: ...

    def get_judge(self, judge_id: UUID) -> Optional[Judge]: ...

    def get_judge_by_external_id(self, external_id: str) -> Optional[Judge]: ...

    def list_judges(self) -> List[Judge]: ...

    # Assignments
    def upsert_assignment(self, judge_id: UUID, record: AssignmentRecord) -> CourtAssignment: ...

    def list_assignments(self, judge_id: Optional[UUID] = None) -> List[CourtAssignment]: ...

    # Decisions
    def upsert_decision(self, record: DecisionRecord, now: datetime) -> Tuple[Decision, bool]: ...

    def list_cases(self) -> List[Decision]: ...

    def count_cases_for_judge(
        self, judge_id: UUID, source: Optional[DecisionSource] = None
    ) -> int: ...

    # Narrow repairs used by the auto-fixer
    def recalculate_case_count(self, judge_id: UUID, now: datetime) -> Optional[int]: ...

    def nullify_case_reference(self, case_id: UUID, field: str, now: datetime) -> bool: ...

    def set_case_outcome(self, case_id: UUID, outcome: str, now: datetime) -> bool: ...

    # Progress
    def get_progress(self, entity_type: EntityType, entity_id: UUID) -> Optional[SyncProgress]: ...

    def save_progress(self, progress: SyncProgress) -> SyncProgress: ...

    def list_progress(self, entity_type: Optional[EntityType] = None) -> List[SyncProgress]: ...

    def snapshot(self) -> EntitySnapshot: ...


class ReportStore(Protocol):
    def append(self, report: ValidationReport) -> None: ...

    def latest(self, limit: int = 1) -> List[ValidationReport]: ...


CASE_REFERENCE_FIELDS = frozenset({"judge_id", "court_id"})
