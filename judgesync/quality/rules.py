"""
JudgeSync - Data Quality Rules

Pure check functions. Each takes an ``EntitySnapshot``, the thresholds and the
current time, and returns a list of ``ValidationIssue``. Checks never touch a
store and never raise on bad data: a defect is reported, not thrown.

Usage:
    issues = [i for check in FULL_CHECKS for i in check(snapshot, thresholds, now)]
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from judgesync.config import Settings
from judgesync.core.models import (
    AssignmentType,
    CourtAssignment,
    EntitySnapshot,
    EntityType,
    FixAction,
    IssueSeverity,
    IssueType,
    ValidationIssue,
)
from judgesync.sync.normalize import TITLE_PREFIX_RE, collapse_whitespace, normalize_person_name

# Open-ended assignments are compared as if they ended here.
OPEN_END = date(2099, 12, 31)

OUTCOME_TAXONOMY = (
    "settled",
    "dismissed",
    "judgment",
    "granted",
    "denied",
    "withdrawn",
    "remanded",
    "affirmed",
    "reversed",
    "vacated",
    "other",
)

# Substring -> canonical outcome, checked in order.
OUTCOME_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("settle", "settled"),
    ("dismiss", "dismissed"),
    ("judgment", "judgment"),
    ("judgement", "judgment"),
    ("grant", "granted"),
    ("deny", "denied"),
    ("denied", "denied"),
    ("withdr", "withdrawn"),
    ("remand", "remanded"),
    ("affirm", "affirmed"),
    ("revers", "reversed"),
    ("vacat", "vacated"),
)

RESYNC_PRIORITY = 7
RESYNC_REASON = "stale_data_validation"

NAME_ALLOWED_PUNCTUATION = "-'.,’"


@dataclass(frozen=True)
class Thresholds:
    stale_judge_days: int = 180
    stale_court_days: int = 365
    min_cases_for_analytics: int = 500
    case_count_drift_medium: int = 5
    case_count_drift_high: int = 20
    autofix_min_confidence: int = 80

    @classmethod
    def from_settings(cls, settings: Settings) -> "Thresholds":
        return cls(
            stale_judge_days=settings.stale_judge_days,
            stale_court_days=settings.stale_court_days,
            min_cases_for_analytics=settings.min_cases_for_analytics,
            case_count_drift_medium=settings.case_count_drift_medium,
            case_count_drift_high=settings.case_count_drift_high,
            autofix_min_confidence=settings.autofix_min_confidence,
        )


Check = Callable[[EntitySnapshot, Thresholds, datetime], List[ValidationIssue]]


# =============================================================================
# Issue construction
# =============================================================================


def is_auto_fixable(
    severity: IssueSeverity,
    fix_action: Optional[FixAction],
    confidence: Optional[int],
    min_confidence: int,
) -> bool:
    """Fixable only with an action, below critical, and confident enough when a guess is involved."""
    if fix_action is None or severity == IssueSeverity.CRITICAL:
        return False
    return confidence is None or confidence >= min_confidence


def make_issue(
    thresholds: Thresholds,
    *,
    type: IssueType,
    severity: IssueSeverity,
    entity: str,
    entity_id: Any,
    message: str,
    suggested_action: str,
    fix_action: Optional[FixAction] = None,
    confidence: Optional[int] = None,
    **metadata: Any,
) -> ValidationIssue:
    if confidence is not None:
        metadata["fix_confidence"] = confidence
    return ValidationIssue(
        type=type,
        severity=severity,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        message=message,
        suggested_action=suggested_action,
        fix_action=fix_action,
        auto_fixable=is_auto_fixable(severity, fix_action, confidence, thresholds.autofix_min_confidence),
        metadata=metadata,
    )


def _resync(entity_type: EntityType, external_id: Optional[str]) -> Dict[str, Any]:
    return {
        "resync_entity_type": entity_type.value,
        "resync_external_id": external_id,
        "resync_priority": RESYNC_PRIORITY,
        "resync_reason": RESYNC_REASON,
    }


# =============================================================================
# Heuristics (pure)
# =============================================================================


def intervals_overlap(
    start1: date, end1: Optional[date], start2: date, end2: Optional[date]
) -> bool:
    """Half-open [start, end) ranges; an open end is treated as OPEN_END."""
    return start1 < (end2 or OPEN_END) and start2 < (end1 or OPEN_END)


def suggest_outcome(raw: str) -> Tuple[str, int]:
    """
    Map a free-text outcome onto the closed taxonomy.

    Returns (suggestion, confidence). One unambiguous keyword scores 90;
    several competing keywords score 60; no keyword falls back to "other" at 40.
    """
    text = collapse_whitespace(raw).lower()
    if text in OUTCOME_TAXONOMY:
        return text, 100
    matches: List[str] = []
    for keyword, canonical in OUTCOME_KEYWORDS:
        if keyword in text and canonical not in matches:
            matches.append(canonical)
    if len(matches) == 1:
        return matches[0], 90
    if matches:
        return matches[0], 60
    return "other", 40


def name_violations(name: str) -> List[str]:
    violations: List[str] = []
    letters = [c for c in name if c.isalpha()]
    if TITLE_PREFIX_RE.match(name.strip()):
        violations.append("contains title prefix")
    if letters and name == name.upper() and len(name) > 3:
        violations.append("all uppercase")
    if letters and name == name.lower():
        violations.append("all lowercase")
    if re.search(r"\s{2,}", name) or name != name.strip():
        violations.append("excess whitespace")
    if any(not (c.isalpha() or c.isspace() or c in NAME_ALLOWED_PUNCTUATION) for c in name):
        violations.append("invalid characters")
    return violations


def suggest_standard_name(name: str) -> Tuple[str, int]:
    """
    Standardized form of a judge name and a confidence in it.

    Whitespace and title fixes are mechanical (95). Re-casing can get names
    like "McDonald" wrong (75). Dropping characters is a guess (50).
    """
    violations = name_violations(name)
    if not violations:
        return name, 100
    cleaned = "".join(
        c for c in name if c.isalpha() or c.isspace() or c in NAME_ALLOWED_PUNCTUATION
    )
    suggestion = normalize_person_name(cleaned)
    confidence = 95
    if "all uppercase" in violations or "all lowercase" in violations:
        confidence = 75
    if "invalid characters" in violations:
        confidence = 50
    return suggestion, confidence


def _is_stale(last_synced_at: Optional[datetime], now: datetime, days: int) -> bool:
    return last_synced_at is None or now - last_synced_at > timedelta(days=days)


def _norm_jurisdiction(value: Optional[str]) -> str:
    return (value or "").strip().upper()


# =============================================================================
# Orphans
# =============================================================================


def check_orphaned_cases(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    judges = {j.id for j in snapshot.judges}
    courts = {c.id for c in snapshot.courts}
    issues = []
    for case in snapshot.cases:
        for field, known in (("judge_id", judges), ("court_id", courts)):
            ref = getattr(case, field)
            if ref is not None and ref not in known:
                issues.append(
                    make_issue(
                        t,
                        type=IssueType.ORPHANED_RECORD,
                        severity=IssueSeverity.HIGH,
                        entity="case",
                        entity_id=case.id,
                        message=f"Case {case.external_id} references missing {field} {ref}",
                        suggested_action=f"Clear the dangling {field} or resync the referenced entity",
                        fix_action=FixAction.NULLIFY_REFERENCE,
                        field=field,
                        missing_id=str(ref),
                    )
                )
    return issues


def check_orphaned_assignments(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    judges = {j.id for j in snapshot.judges}
    courts = {c.id for c in snapshot.courts}
    issues = []
    for a in snapshot.assignments:
        missing = []
        if a.judge_id not in judges:
            missing.append("judge")
        if a.court_id not in courts:
            missing.append("court")
        if missing:
            issues.append(
                make_issue(
                    t,
                    type=IssueType.ORPHANED_RECORD,
                    severity=IssueSeverity.CRITICAL,
                    entity="assignment",
                    entity_id=a.id,
                    message=f"Assignment {a.id} references missing {' and '.join(missing)}",
                    suggested_action="Review the assignment manually before deleting or re-linking it",
                    judge_id=str(a.judge_id),
                    court_id=str(a.court_id),
                )
            )
    return issues


# =============================================================================
# Duplicates
# =============================================================================


def check_duplicate_external_ids(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    issues = []
    for entity, rows in (("court", snapshot.courts), ("judge", snapshot.judges), ("case", snapshot.cases)):
        groups: Dict[str, List[Any]] = defaultdict(list)
        for row in rows:
            groups[row.external_id].append(row)
        for external_id, dupes in groups.items():
            if len(dupes) > 1:
                issues.append(
                    make_issue(
                        t,
                        type=IssueType.DUPLICATE_IDENTIFIER,
                        severity=IssueSeverity.CRITICAL,
                        entity=entity,
                        entity_id=dupes[0].id,
                        message=f"{len(dupes)} {entity} rows share external id {external_id}",
                        suggested_action="Merge the duplicates and keep the most recently synced row",
                        external_id=external_id,
                        ids=[str(d.id) for d in dupes],
                    )
                )
    return issues


def check_duplicate_docket_numbers(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    """Same docket number twice in one court from the same source."""
    groups: Dict[Tuple[Any, str, str], List[Any]] = defaultdict(list)
    for case in snapshot.cases:
        number = collapse_whitespace(case.docket_number).upper()
        if number:
            groups[(case.court_id, number, case.source.value)].append(case)
    issues = []
    for (court_id, number, source), dupes in groups.items():
        if len(dupes) > 1:
            issues.append(
                make_issue(
                    t,
                    type=IssueType.DUPLICATE_IDENTIFIER,
                    severity=IssueSeverity.MEDIUM,
                    entity="case",
                    entity_id=dupes[0].id,
                    message=f"{len(dupes)} {source} cases share docket number {number}",
                    suggested_action="Check whether these are the same case imported twice",
                    docket_number=number,
                    court_id=str(court_id) if court_id else None,
                    ids=[str(d.id) for d in dupes],
                )
            )
    return issues


# =============================================================================
# Staleness and missing fields
# =============================================================================


def check_stale_records(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    issues = []
    for judge in snapshot.judges:
        if _is_stale(judge.last_synced_at, now, t.stale_judge_days):
            issues.append(
                make_issue(
                    t,
                    type=IssueType.STALE_DATA,
                    severity=IssueSeverity.MEDIUM,
                    entity="judge",
                    entity_id=judge.id,
                    message=f"Judge {judge.name!r} not synced in over {t.stale_judge_days} days",
                    suggested_action="Queue a resync",
                    fix_action=FixAction.QUEUE_RESYNC,
                    last_synced_at=judge.last_synced_at.isoformat() if judge.last_synced_at else None,
                    **_resync(EntityType.JUDGE, judge.external_id),
                )
            )
    for court in snapshot.courts:
        if _is_stale(court.last_synced_at, now, t.stale_court_days):
            issues.append(
                make_issue(
                    t,
                    type=IssueType.STALE_DATA,
                    severity=IssueSeverity.LOW,
                    entity="court",
                    entity_id=court.id,
                    message=f"Court {court.name!r} not synced in over {t.stale_court_days} days",
                    suggested_action="Queue a resync",
                    fix_action=FixAction.QUEUE_RESYNC,
                    last_synced_at=court.last_synced_at.isoformat() if court.last_synced_at else None,
                    **_resync(EntityType.COURT, court.external_id),
                )
            )
    return issues


def check_missing_fields(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    issues = []
    for entity, rows, entity_type in (
        ("judge", snapshot.judges, EntityType.JUDGE),
        ("court", snapshot.courts, EntityType.COURT),
    ):
        for row in rows:
            if not row.name.strip():
                issues.append(
                    make_issue(
                        t,
                        type=IssueType.MISSING_FIELD,
                        severity=IssueSeverity.CRITICAL,
                        entity=entity,
                        entity_id=row.id,
                        message=f"{entity.title()} {row.external_id} has no name",
                        suggested_action="Review the upstream record; the row is unusable without a name",
                        field="name",
                    )
                )
            if not (row.jurisdiction or "").strip():
                issues.append(
                    make_issue(
                        t,
                        type=IssueType.MISSING_FIELD,
                        severity=IssueSeverity.MEDIUM,
                        entity=entity,
                        entity_id=row.id,
                        message=f"{entity.title()} {row.external_id} has no jurisdiction",
                        suggested_action="Queue a resync to re-derive the jurisdiction",
                        fix_action=FixAction.QUEUE_RESYNC,
                        field="jurisdiction",
                        **_resync(entity_type, row.external_id),
                    )
                )

    judge_external = {j.id: j.external_id for j in snapshot.judges}
    for case in snapshot.cases:
        if case.case_name.strip():
            continue
        judge_external_id = judge_external.get(case.judge_id) if case.judge_id else None
        issues.append(
            make_issue(
                t,
                type=IssueType.MISSING_FIELD,
                severity=IssueSeverity.HIGH,
                entity="case",
                entity_id=case.id,
                message=f"Case {case.external_id} has no case name",
                suggested_action="Resync the judge's decisions",
                # Without a resolvable judge there is nothing to resync.
                fix_action=FixAction.QUEUE_RESYNC if judge_external_id else None,
                field="case_name",
                **_resync(EntityType.DECISION, judge_external_id),
            )
        )
    return issues


# =============================================================================
# Integrity
# =============================================================================


def check_case_count_drift(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    actual: Dict[Any, int] = defaultdict(int)
    for case in snapshot.cases:
        if case.judge_id is not None:
            actual[case.judge_id] += 1
    issues = []
    for judge in snapshot.judges:
        count = actual.get(judge.id, 0)
        drift = abs(judge.total_cases - count)
        if drift <= t.case_count_drift_medium:
            continue
        severity = IssueSeverity.HIGH if drift > t.case_count_drift_high else IssueSeverity.MEDIUM
        issues.append(
            make_issue(
                t,
                type=IssueType.DATA_INTEGRITY,
                severity=severity,
                entity="judge",
                entity_id=judge.id,
                message=f"Judge {judge.name!r} total_cases is {judge.total_cases} but {count} cases exist",
                suggested_action="Recalculate the denormalized case count",
                fix_action=FixAction.RECALCULATE_COUNT,
                recorded=judge.total_cases,
                actual=count,
                drift=drift,
            )
        )
    return issues


def check_sample_size(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    minimum = t.min_cases_for_analytics
    issues = []
    for judge in snapshot.judges:
        count = judge.total_cases
        if count >= minimum:
            continue
        if count < minimum * 0.2:
            severity = IssueSeverity.HIGH
            action = "Import additional cases or mark the judge as having insufficient data"
        elif count < minimum * 0.5:
            severity = IssueSeverity.MEDIUM
            action = "Continue monitoring case count growth"
        else:
            severity = IssueSeverity.LOW
            action = "Continue monitoring case count growth"
        issues.append(
            make_issue(
                t,
                type=IssueType.DATA_INTEGRITY,
                severity=severity,
                entity="judge",
                entity_id=judge.id,
                message=(
                    f"Judge {judge.name!r} has {count} cases, below the {minimum} "
                    "needed for full analytics"
                ),
                suggested_action=action,
                case_count=count,
                minimum=minimum,
                deficit=minimum - count,
            )
        )
    return issues


def check_outcome_taxonomy(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    issues = []
    for case in snapshot.cases:
        outcome = collapse_whitespace(case.outcome).lower()
        if not outcome or outcome in OUTCOME_TAXONOMY:
            continue
        suggestion, confidence = suggest_outcome(outcome)
        issues.append(
            make_issue(
                t,
                type=IssueType.DATA_INTEGRITY,
                severity=IssueSeverity.LOW,
                entity="case",
                entity_id=case.id,
                message=f"Case {case.external_id} has non-standard outcome {case.outcome!r}",
                suggested_action=f"Map to {suggestion!r}",
                fix_action=FixAction.APPLY_MAPPING,
                confidence=confidence,
                current_outcome=case.outcome,
                suggested_mapping=suggestion,
            )
        )
    return issues


def check_name_standards(snapshot: EntitySnapshot, t: Thresholds, now: datetime) -> List[ValidationIssue]:
    issues = []
    for judge in snapshot.judges:
        if not judge.name.strip():
            continue
        violations = name_violations(judge.name)
        if not violations:
            continue
        suggestion, confidence = suggest_standard_name(judge.name)
        issues.append(
            make_issue(
                t,
                type=IssueType.DATA_INTEGRITY,
                severity=IssueSeverity.MEDIUM,
                entity="judge",
                entity_id=judge.id,
                message=f"Judge name {judge.name!r} has standardization issues: {', '.join(violations)}",
                suggested_action=f"Rename to {suggestion!r} after review",
                confidence=confidence,
                current_name=judge.name,
                suggested_name=suggestion,
                violations=violations,
            )
        )
    return issues


# =============================================================================
# Relationships
# =============================================================================


def _by_judge(assignments: Sequence[CourtAssignment]) -> Dict[Any, List[CourtAssignment]]:
    grouped: Dict[Any, List[CourtAssignment]] = defaultdict(list)
    for a in assignments:
        grouped[a.judge_id].append(a)
    return grouped


def check_primary_assignments(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    """Exactly one active primary per judge; retired judges are exempt from the lower bound."""
    issues = []
    for judge_id, assignments in _by_judge(snapshot.assignments).items():
        primaries = [a for a in assignments if a.assignment_type == AssignmentType.PRIMARY and a.is_active]
        if len(primaries) > 1:
            issues.append(
                make_issue(
                    t,
                    type=IssueType.INCONSISTENT_RELATIONSHIP,
                    severity=IssueSeverity.CRITICAL,
                    entity="assignment",
                    entity_id=judge_id,
                    message=f"Judge {judge_id} has {len(primaries)} active primary assignments",
                    suggested_action="Keep the most recent as primary; end or convert the others to visiting",
                    judge_id=str(judge_id),
                    assignment_ids=[str(a.id) for a in primaries],
                )
            )
        elif not primaries and not any(a.assignment_type == AssignmentType.RETIRED for a in assignments):
            issues.append(
                make_issue(
                    t,
                    type=IssueType.INCONSISTENT_RELATIONSHIP,
                    severity=IssueSeverity.HIGH,
                    entity="judge",
                    entity_id=judge_id,
                    message=f"Judge {judge_id} has assignments but no active primary",
                    suggested_action="Set one assignment as primary or mark the judge as retired",
                    judge_id=str(judge_id),
                )
            )
    return issues


def check_assignment_overlaps(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    grouped: Dict[Tuple[Any, Any], List[CourtAssignment]] = defaultdict(list)
    for a in snapshot.assignments:
        grouped[(a.judge_id, a.court_id)].append(a)
    issues = []
    for (judge_id, court_id), assignments in grouped.items():
        ordered = sorted(assignments, key=lambda a: a.start_date)
        for a, b in combinations(ordered, 2):
            if not intervals_overlap(a.start_date, a.end_date, b.start_date, b.end_date):
                continue
            issues.append(
                make_issue(
                    t,
                    type=IssueType.INCONSISTENT_RELATIONSHIP,
                    severity=IssueSeverity.CRITICAL,
                    entity="assignment",
                    entity_id=a.id,
                    message=(
                        f"Overlapping assignments for judge {judge_id} at court {court_id}: "
                        f"{a.start_date} to {a.end_date or 'present'} and "
                        f"{b.start_date} to {b.end_date or 'present'}"
                    ),
                    suggested_action="Set the earlier assignment's end date to the later one's start date",
                    judge_id=str(judge_id),
                    court_id=str(court_id),
                    assignment_ids=[str(a.id), str(b.id)],
                )
            )
    return issues


def check_jurisdiction_mismatch(
    snapshot: EntitySnapshot, t: Thresholds, now: datetime
) -> List[ValidationIssue]:
    courts = {c.id: c for c in snapshot.courts}
    issues = []
    for judge in snapshot.judges:
        court = courts.get(judge.court_id) if judge.court_id else None
        if court is None:
            continue
        judge_j, court_j = _norm_jurisdiction(judge.jurisdiction), _norm_jurisdiction(court.jurisdiction)
        if judge_j and court_j and judge_j != court_j:
            issues.append(
                make_issue(
                    t,
                    type=IssueType.INCONSISTENT_RELATIONSHIP,
                    severity=IssueSeverity.HIGH,
                    entity="judge",
                    entity_id=judge.id,
                    message=(
                        f"Jurisdiction mismatch: judge {judge.name!r} ({judge_j}) "
                        f"sits on {court.name!r} ({court_j})"
                    ),
                    suggested_action="Verify which jurisdiction is correct and resync",
                    judge_jurisdiction=judge_j,
                    court_jurisdiction=court_j,
                    court_id=str(court.id),
                )
            )
    return issues


# =============================================================================
# Batteries
# =============================================================================

QUICK_CHECKS: Tuple[Check, ...] = (
    check_orphaned_cases,
    check_orphaned_assignments,
    check_duplicate_external_ids,
    check_duplicate_docket_numbers,
    check_missing_fields,
)

FULL_CHECKS: Tuple[Check, ...] = QUICK_CHECKS + (
    check_stale_records,
    check_case_count_drift,
    check_primary_assignments,
    check_assignment_overlaps,
    check_jurisdiction_mismatch,
    check_name_standards,
    check_outcome_taxonomy,
    check_sample_size,
)
