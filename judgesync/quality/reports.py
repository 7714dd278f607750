"""
JudgeSync - Validation Reports

Aggregation of issues into an immutable ``ValidationReport``, the rolling
health score and the plain-text rendering used by ``judgesync validate --text``.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import List, Sequence

from judgesync.core.models import SEVERITY_ORDER, IssueSeverity, IssueType, ValidationIssue, ValidationReport

STALE_RECOMMENDATION_MIN = 5

HEAVY_RULE = "═" * 63
LIGHT_RULE = "─" * 63


def summarize(critical: int, high: int, medium: int, low: int) -> str:
    if critical:
        return (
            f"CRITICAL: Found {critical} critical issues requiring immediate attention. "
            "Database integrity may be compromised."
        )
    if high:
        return f"HIGH PRIORITY: Found {high} high-priority issues that should be addressed soon."
    if medium:
        return f"MODERATE: Found {medium} medium-priority issues. Consider addressing during maintenance."
    if low:
        return f"LOW PRIORITY: Found {low} low-priority issues. Can be addressed as time permits."
    return "HEALTHY: No data quality issues detected. Database is in good condition."


def recommend(issues: Sequence[ValidationIssue]) -> List[str]:
    by_type = Counter(i.type for i in issues)
    critical = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
    fixable = sum(1 for i in issues if i.auto_fixable)
    recs: List[str] = []
    if critical:
        recs.append(f"Address {critical} critical issues immediately to restore data integrity")
    if by_type[IssueType.ORPHANED_RECORD]:
        recs.append(f"Clean up {by_type[IssueType.ORPHANED_RECORD]} orphaned records to prevent query failures")
    if by_type[IssueType.DUPLICATE_IDENTIFIER]:
        recs.append(
            f"Resolve {by_type[IssueType.DUPLICATE_IDENTIFIER]} duplicate identifiers to ensure data uniqueness"
        )
    if by_type[IssueType.STALE_DATA] > STALE_RECOMMENDATION_MIN:
        recs.append(f"Queue {by_type[IssueType.STALE_DATA]} stale records for resync to keep data current")
    if by_type[IssueType.INCONSISTENT_RELATIONSHIP]:
        recs.append(
            f"Review {by_type[IssueType.INCONSISTENT_RELATIONSHIP]} court assignment conflicts by hand"
        )
    if fixable:
        recs.append(f"{fixable} issues can be auto-fixed. Run `judgesync validate --fix` to resolve.")
    if not issues:
        recs.append("Continue regular validation schedule to maintain data quality")
    return recs


def build_report(
    validation_id: str,
    issues: Sequence[ValidationIssue],
    started_at: datetime,
    completed_at: datetime,
    run_kind: str = "full",
) -> ValidationReport:
    ordered = sorted(issues, key=lambda i: (SEVERITY_ORDER[i.severity], i.type.value, i.entity))
    severities = Counter(i.severity for i in ordered)
    counts = (
        severities[IssueSeverity.CRITICAL],
        severities[IssueSeverity.HIGH],
        severities[IssueSeverity.MEDIUM],
        severities[IssueSeverity.LOW],
    )
    return ValidationReport(
        validation_id=validation_id,
        run_kind=run_kind,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=round((completed_at - started_at).total_seconds() * 1000, 2),
        total_issues=len(ordered),
        critical_issues=counts[0],
        high_issues=counts[1],
        medium_issues=counts[2],
        low_issues=counts[3],
        auto_fixable_issues=sum(1 for i in ordered if i.auto_fixable),
        issues_by_type=dict(Counter(i.type.value for i in ordered)),
        issues_by_entity=dict(Counter(i.entity for i in ordered)),
        issues=tuple(ordered),
        summary=summarize(*counts),
        recommendations=tuple(recommend(ordered)),
    )


def report_score(report: ValidationReport) -> int:
    return max(0, 100 - 2 * report.total_issues)


def health_score(reports: Sequence[ValidationReport]) -> float:
    """Mean per-report score over the given reports; 100 when there are none."""
    if not reports:
        return 100.0
    return round(sum(report_score(r) for r in reports) / len(reports), 1)


def render_text_report(report: ValidationReport) -> str:
    lines = [
        HEAVY_RULE,
        "        DATA QUALITY VALIDATION REPORT",
        HEAVY_RULE,
        "",
        f"Validation ID: {report.validation_id}",
        f"Run: {report.run_kind}",
        f"Completed: {report.completed_at.isoformat()}",
        f"Duration: {report.duration_ms / 1000:.2f}s",
        "",
        LIGHT_RULE,
        "SUMMARY",
        LIGHT_RULE,
        report.summary,
        "",
        f"Total Issues: {report.total_issues}",
        f"  Critical:   {report.critical_issues}",
        f"  High:       {report.high_issues}",
        f"  Medium:     {report.medium_issues}",
        f"  Low:        {report.low_issues}",
        f"  Auto-fixable: {report.auto_fixable_issues}",
        "",
    ]

    if report.recommendations:
        lines += [LIGHT_RULE, "RECOMMENDATIONS", LIGHT_RULE]
        lines += [f"{n}. {rec}" for n, rec in enumerate(report.recommendations, 1)]
        lines.append("")

    critical = [i for i in report.issues if i.severity == IssueSeverity.CRITICAL]
    if critical:
        lines += [LIGHT_RULE, "CRITICAL ISSUES", LIGHT_RULE]
        for n, issue in enumerate(critical, 1):
            lines += [
                f"{n}. [{issue.entity.upper()}] {issue.message}",
                f"   Action: {issue.suggested_action}",
                f"   Auto-fixable: {'Yes' if issue.auto_fixable else 'No'}",
                "",
            ]

    lines.append(HEAVY_RULE)
    return "\n".join(lines)
