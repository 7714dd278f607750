"""
JudgeSync - Core Data Models

Pydantic models for every boundary:
- Queue jobs and their per-entity payloads
- Persisted entities (courts, judges, assignments, decisions) and sync progress
- Upstream API payloads (validated before they reach a pipeline)
- Validation issues and reports

Usage:
    from judgesync.core.models import SyncJob, validate_job_payload

    job = SyncJob.model_validate(row)
    payload = validate_job_payload(job.entity_type, job.payload)
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from judgesync.core.error_taxonomy import InvalidJobPayload

# =============================================================================
# Enums
# =============================================================================


class EntityType(str, Enum):
    """Entity types a sync job can target."""

    COURT = "court"
    JUDGE = "judge"
    DECISION = "decision"
    CLEANUP = "cleanup"
    FULL = "full"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class JobStatus(str, Enum):
    """Sync job lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class CourtType(str, Enum):
    FEDERAL = "federal"
    STATE = "state"


class AssignmentType(str, Enum):
    PRIMARY = "primary"
    VISITING = "visiting"
    TEMPORARY = "temporary"
    RETIRED = "retired"


class DecisionSource(str, Enum):
    OPINION = "opinion"
    DOCKET = "docket"


class SyncPhase(str, Enum):
    """Completion phase, in order."""

    DISCOVERY = "discovery"
    POSITIONS = "positions"
    DETAILS = "details"
    OPINIONS = "opinions"
    DOCKETS = "dockets"
    COMPLETE = "complete"


class IssueType(str, Enum):
    ORPHANED_RECORD = "orphaned_record"
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    STALE_DATA = "stale_data"
    MISSING_FIELD = "missing_field"
    INCONSISTENT_RELATIONSHIP = "inconsistent_relationship"
    DATA_INTEGRITY = "data_integrity"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.HIGH: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 3,
}


class FixAction(str, Enum):
    """Narrow, idempotent repairs the auto-fixer knows how to apply."""

    NULLIFY_REFERENCE = "nullify_reference"
    QUEUE_RESYNC = "queue_resync"
    RECALCULATE_COUNT = "recalculate_count"
    APPLY_MAPPING = "apply_mapping"


# =============================================================================
# Base Configuration
# =============================================================================


class StrictModel(BaseModel):
    """Base model for payloads we author ourselves."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class RecordModel(BaseModel):
    """Base model for rows read back from a store (extra columns ignored)."""

    model_config = ConfigDict(
        extra="ignore",
        from_attributes=True,
    )


class FlexibleModel(BaseModel):
    """Base model that allows extra fields (for external data)."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
    )


class FrozenModel(BaseModel):
    """Immutable model for audit records."""

    model_config = ConfigDict(frozen=True, extra="forbid")


# =============================================================================
# Queue Job Models
# =============================================================================


class SyncJob(RecordModel):
    """Complete sync job record from the job store."""

    id: int = Field(..., ge=1)
    entity_type: EntityType
    entity_external_id: Optional[str] = None
    operation: SyncOperation = SyncOperation.UPDATE
    priority: int = 0
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    scheduled_for: datetime
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class JobPayloadBase(StrictModel):
    """Base payload for sync jobs."""

    reason: Optional[str] = Field(None, max_length=100, description="Why the job was enqueued")


class CourtJobPayload(JobPayloadBase):
    jurisdiction: Optional[str] = Field(None, max_length=20)
    force_refresh: bool = False


class JudgeJobPayload(JobPayloadBase):
    jurisdiction: Optional[str] = Field(None, max_length=20)
    discovery_limit: Optional[int] = Field(None, ge=1, le=10_000)
    sync_decisions: bool = True


class DecisionJobPayload(JobPayloadBase):
    max_documents: Optional[int] = Field(None, ge=1, le=10_000)
    since: Optional[date] = None


class CleanupJobPayload(JobPayloadBase):
    retention_days: Optional[int] = Field(None, ge=1)
    lease_seconds: Optional[int] = Field(None, ge=1)


class FullJobPayload(JobPayloadBase):
    jurisdiction: Optional[str] = Field(None, max_length=20)


JobPayload = (
    CourtJobPayload | JudgeJobPayload | DecisionJobPayload | CleanupJobPayload | FullJobPayload
)

PAYLOAD_MODELS: Dict[EntityType, Type[JobPayloadBase]] = {
    EntityType.COURT: CourtJobPayload,
    EntityType.JUDGE: JudgeJobPayload,
    EntityType.DECISION: DecisionJobPayload,
    EntityType.CLEANUP: CleanupJobPayload,
    EntityType.FULL: FullJobPayload,
}


def validate_job_payload(entity_type: EntityType | str, payload: Dict[str, Any] | None) -> Any:
    """
    Validate a job payload against the model for its entity type.

    Raises:
        InvalidJobPayload: unknown entity type or payload rejected by pydantic
    """
    try:
        model = PAYLOAD_MODELS[EntityType(entity_type)]
    except (KeyError, ValueError) as e:
        raise InvalidJobPayload(f"unknown entity type: {entity_type!r}") from e
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidJobPayload(f"{entity_type} payload invalid: {e.error_count()} error(s)") from e


class QueueStats(FrozenModel):
    """Counts per job status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed + self.cancelled

    @property
    def active(self) -> int:
        return self.pending + self.running


# =============================================================================
# Entity Models
# =============================================================================


class Court(RecordModel):
    id: UUID
    external_id: str
    name: str
    slug: str
    jurisdiction: Optional[str] = None
    court_type: CourtType = CourtType.STATE
    url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_synced_at: Optional[datetime] = None


class Education(FrozenModel):
    """One degree, e.g. Harvard Law School (J.D., 1995)."""

    school: str
    degree: Optional[str] = None
    year: Optional[str] = None


class PoliticalAffiliation(FrozenModel):
    party: str
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    appointer: Optional[str] = None


class Judge(RecordModel):
    id: UUID
    external_id: str
    name: str
    slug: str
    jurisdiction: Optional[str] = None
    court_id: Optional[UUID] = None
    appointed_date: Optional[date] = None
    total_cases: int = 0
    education: List[Education] = Field(default_factory=list)
    political_affiliation: List[PoliticalAffiliation] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    last_synced_at: Optional[datetime] = None


class CourtAssignment(RecordModel):
    id: UUID
    judge_id: UUID
    court_id: UUID
    assignment_type: AssignmentType
    start_date: date
    end_date: Optional[date] = None
    position_title: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end_date is None


class Decision(RecordModel):
    id: UUID
    external_id: str
    case_name: str
    docket_number: Optional[str] = None
    judge_id: Optional[UUID] = None
    court_id: Optional[UUID] = None
    decision_date: Optional[date] = None
    outcome: Optional[str] = None
    source: DecisionSource = DecisionSource.OPINION
    jurisdiction: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_synced_at: Optional[datetime] = None


# Upsert inputs: everything the pipeline decides, nothing the store assigns.


class CourtRecord(StrictModel):
    external_id: str = Field(..., min_length=1)
    name: str
    slug: str
    jurisdiction: Optional[str] = None
    court_type: CourtType = CourtType.STATE
    url: Optional[str] = None


class JudgeRecord(StrictModel):
    external_id: str = Field(..., min_length=1)
    name: str
    slug: str
    jurisdiction: Optional[str] = None
    court_id: Optional[UUID] = None
    appointed_date: Optional[date] = None
    education: List[Education] = Field(default_factory=list)
    political_affiliation: List[PoliticalAffiliation] = Field(default_factory=list)


class AssignmentRecord(StrictModel):
    court_id: UUID
    assignment_type: AssignmentType
    start_date: date
    end_date: Optional[date] = None
    position_title: Optional[str] = None


class DecisionRecord(StrictModel):
    external_id: str = Field(..., min_length=1)
    case_name: str
    docket_number: Optional[str] = None
    judge_id: Optional[UUID] = None
    court_id: Optional[UUID] = None
    decision_date: Optional[date] = None
    outcome: Optional[str] = None
    source: DecisionSource = DecisionSource.OPINION
    jurisdiction: Optional[str] = None


class SyncProgress(RecordModel):
    """Per-entity sync progress, owned by the pipelines."""

    entity_type: EntityType
    entity_id: UUID
    phase: SyncPhase = SyncPhase.DISCOVERY
    has_positions: bool = False
    has_details: bool = False
    opinions_count: int = 0
    dockets_count: int = 0
    total_cases_count: int = 0
    is_analytics_ready: bool = False
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EntitySnapshot(BaseModel):
    """Everything the validator reads, loaded once per run."""

    courts: List[Court] = Field(default_factory=list)
    judges: List[Judge] = Field(default_factory=list)
    assignments: List[CourtAssignment] = Field(default_factory=list)
    cases: List[Decision] = Field(default_factory=list)


# =============================================================================
# Upstream Payload Models
# =============================================================================


def _id_from_reference(value: Any) -> Optional[str]:
    """Accept an int id, a nested object or a resource URL and return the id."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return _id_from_reference(value.get("id"))
    if isinstance(value, int):
        return str(value)
    text = str(value).strip()
    if text.startswith("http"):
        return text.rstrip("/").rsplit("/", 1)[-1] or None
    return text


class UpstreamCourt(FlexibleModel):
    id: str
    full_name: Optional[str] = None
    short_name: Optional[str] = None
    jurisdiction: Optional[str] = None
    url: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_from_reference(v)

    @property
    def display_name(self) -> str:
        return self.full_name or self.short_name or ""


class UpstreamPosition(FlexibleModel):
    id: Optional[str] = None
    court: Optional[str] = None
    position_type: Optional[str] = None
    job_title: Optional[str] = None
    date_start: Optional[date] = None
    date_nominated: Optional[date] = None
    date_confirmation: Optional[date] = None
    date_termination: Optional[date] = None
    termination_reason: Optional[str] = None

    @field_validator("id", "court", mode="before")
    @classmethod
    def _coerce_ref(cls, v: Any) -> Any:
        return _id_from_reference(v)

    @property
    def effective_start(self) -> Optional[date]:
        return self.date_start or self.date_confirmation or self.date_nominated


class UpstreamPerson(FlexibleModel):
    id: str
    name_first: str = ""
    name_middle: str = ""
    name_last: str = ""
    name_suffix: str = ""
    positions: List[UpstreamPosition] = Field(default_factory=list)
    educations: List[Dict[str, Any]] = Field(default_factory=list)
    political_affiliations: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        return _id_from_reference(v)

    @field_validator("name_first", "name_middle", "name_last", "name_suffix", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return v or ""

    @field_validator("positions", "educations", "political_affiliations", mode="before")
    @classmethod
    def _drop_nested_urls(cls, v: Any) -> Any:
        # Listing endpoints return nested resources as URLs only.
        if not v:
            return []
        return [p for p in v if isinstance(p, dict)]

    @property
    def full_name(self) -> str:
        parts = [self.name_first, self.name_middle, self.name_last, self.name_suffix]
        return " ".join(p for p in parts if p)


class UpstreamOpinion(FlexibleModel):
    id: str
    case_name: Optional[str] = None
    docket_number: Optional[str] = None
    court: Optional[str] = None
    date_filed: Optional[date] = None
    disposition: Optional[str] = None

    @field_validator("id", "court", mode="before")
    @classmethod
    def _coerce_ref(cls, v: Any) -> Any:
        return _id_from_reference(v)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "UpstreamOpinion":
        """Flatten the nested cluster/docket objects the opinions endpoint embeds."""
        merged = dict(data)
        cluster = data.get("cluster")
        if isinstance(cluster, dict):
            for key in ("case_name", "date_filed", "disposition"):
                if merged.get(key) is None:
                    merged[key] = cluster.get(key)
            docket = cluster.get("docket")
            if isinstance(docket, dict):
                if merged.get("docket_number") is None:
                    merged["docket_number"] = docket.get("docket_number")
                if merged.get("court") is None:
                    merged["court"] = docket.get("court_id") or docket.get("court")
        return cls.model_validate(merged)


class UpstreamDocket(FlexibleModel):
    id: str
    case_name: Optional[str] = None
    docket_number: Optional[str] = None
    court_id: Optional[str] = None
    date_filed: Optional[date] = None
    date_terminated: Optional[date] = None
    disposition: Optional[str] = None

    @field_validator("id", "court_id", mode="before")
    @classmethod
    def _coerce_ref(cls, v: Any) -> Any:
        return _id_from_reference(v)


# =============================================================================
# Validation Models
# =============================================================================


class ValidationIssue(FrozenModel):
    """One detected defect. Reported, never raised."""

    issue_id: str = Field(default_factory=lambda: uuid4().hex)
    type: IssueType
    severity: IssueSeverity
    entity: str
    entity_id: Optional[str] = None
    message: str
    suggested_action: str
    auto_fixable: bool = False
    fix_action: Optional[FixAction] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationReport(FrozenModel):
    """Immutable result of one validation run."""

    validation_id: str
    run_kind: str = "full"
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    total_issues: int
    critical_issues: int
    high_issues: int
    medium_issues: int
    low_issues: int
    auto_fixable_issues: int
    issues_by_type: Dict[str, int]
    issues_by_entity: Dict[str, int]
    issues: Tuple[ValidationIssue, ...]
    summary: str
    recommendations: Tuple[str, ...]


class FixResult(FrozenModel):
    issue_id: str
    fix_action: Optional[FixAction] = None
    success: bool
    detail: str
