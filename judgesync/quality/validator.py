"""
JudgeSync - Data Quality Validator

Loads one consistent snapshot, runs a battery of checks from
``judgesync.quality.rules`` and appends the resulting report to the report
store. The validator only reads entities; repairs go through ``AutoFixer``.

Usage:
    validator = DataQualityValidator(entity_store, report_store, Thresholds())
    report = validator.run_full_validation()
    print(render_text_report(report))
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence
from uuid import uuid4

from judgesync.core.logging import LogContext, Timer
from judgesync.core.models import ValidationIssue, ValidationReport
from judgesync.quality.reports import build_report
from judgesync.quality.rules import FULL_CHECKS, QUICK_CHECKS, Check, Thresholds
from judgesync.storage.base import EntityStore, ReportStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_validation_id(now: datetime) -> str:
    return f"val_{now:%Y%m%d%H%M%S}_{uuid4().hex[:8]}"


class DataQualityValidator:
    def __init__(
        self,
        entity_store: EntityStore,
        report_store: ReportStore,
        thresholds: Optional[Thresholds] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entity_store = entity_store
        self.report_store = report_store
        self.thresholds = thresholds or Thresholds()
        self.clock = clock

    def run_full_validation(self) -> ValidationReport:
        """Every check: orphans, duplicates, staleness, integrity, relationships, taxonomy, sample size."""
        return self._run("full", FULL_CHECKS)

    def run_quick_validation(self) -> ValidationReport:
        """Orphan, duplicate and missing-field checks only."""
        return self._run("quick", QUICK_CHECKS)

    def _run(self, run_kind: str, checks: Sequence[Check]) -> ValidationReport:
        started_at = self.clock()
        validation_id = new_validation_id(started_at)
        with LogContext(validation_id=validation_id), Timer() as timer:
            logger.info(f"Starting {run_kind} validation")
            snapshot = self.entity_store.snapshot()
            issues: List[ValidationIssue] = []
            for check in checks:
                found = check(snapshot, self.thresholds, started_at)
                if found:
                    logger.debug(f"{check.__name__}: {len(found)} issue(s)", extra={"count": len(found)})
                issues.extend(found)

            report = build_report(validation_id, issues, started_at, self.clock(), run_kind=run_kind)
            self.report_store.append(report)
            logger.log(
                logging.WARNING if report.critical_issues else logging.INFO,
                report.summary,
                extra={
                    "count": report.total_issues,
                    "duration_ms": round(timer.elapsed_ms, 2),
                    "status": "success",
                },
            )
        return report
