"""
JudgeSync - Auto-Fix Engine

Applies the narrow repairs a ``ValidationIssue`` can carry. Every handler is
idempotent: running the same fixes twice leaves the store as the first pass
left it (a second resync request finds the first one still queued).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Sequence
from uuid import UUID

from judgesync.core.error_taxonomy import JudgeSyncError
from judgesync.core.logging import log_timing
from judgesync.core.models import EntityType, FixAction, FixResult, ValidationIssue
from judgesync.queue.manager import SyncQueueManager
from judgesync.quality.rules import RESYNC_PRIORITY, RESYNC_REASON
from judgesync.storage.base import EntityStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoFixer:
    def __init__(
        self,
        entity_store: EntityStore,
        queue: SyncQueueManager,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entity_store = entity_store
        self.queue = queue
        self.clock = clock
        self._handlers: Dict[FixAction, Callable[[ValidationIssue], str]] = {
            FixAction.NULLIFY_REFERENCE: self._nullify_reference,
            FixAction.QUEUE_RESYNC: self._queue_resync,
            FixAction.RECALCULATE_COUNT: self._recalculate_count,
            FixAction.APPLY_MAPPING: self._apply_mapping,
        }

    @log_timing(logger, "Auto-fix pass", level=logging.DEBUG)
    def fix_issues(self, issues: Sequence[ValidationIssue]) -> List[FixResult]:
        """Apply every auto-fixable issue; the rest are left for human review."""
        fixable = [i for i in issues if i.auto_fixable]
        results = [self.fix_issue(issue) for issue in fixable]
        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"Auto-fix applied {succeeded}/{len(results)} fix(es); "
            f"{len(issues) - len(fixable)} issue(s) need review",
            extra={"count": succeeded},
        )
        return results

    def fix_issue(self, issue: ValidationIssue) -> FixResult:
        if not issue.auto_fixable or issue.fix_action is None:
            return FixResult(
                issue_id=issue.issue_id,
                fix_action=issue.fix_action,
                success=False,
                detail="not auto-fixable; needs human review",
            )
        try:
            detail = self._handlers[issue.fix_action](issue)
        except (JudgeSyncError, KeyError, ValueError) as e:
            message = e.describe() if isinstance(e, JudgeSyncError) else f"{type(e).__name__}: {e}"
            logger.warning(
                f"Fix {issue.fix_action.value} failed for {issue.entity} {issue.entity_id}: {message}"
            )
            return FixResult(issue_id=issue.issue_id, fix_action=issue.fix_action, success=False, detail=message)
        return FixResult(issue_id=issue.issue_id, fix_action=issue.fix_action, success=True, detail=detail)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _nullify_reference(self, issue: ValidationIssue) -> str:
        field = issue.metadata["field"]
        changed = self.entity_store.nullify_case_reference(UUID(issue.entity_id), field, self.clock())
        return f"cleared {field}" if changed else f"{field} already clear"

    def _queue_resync(self, issue: ValidationIssue) -> str:
        external_id = issue.metadata.get("resync_external_id")
        if not external_id:
            raise ValueError("issue carries no external id to resync")
        job = self.queue.enqueue(
            EntityType(issue.metadata["resync_entity_type"]),
            external_id,
            priority=issue.metadata.get("resync_priority", RESYNC_PRIORITY),
            payload={"reason": issue.metadata.get("resync_reason", RESYNC_REASON)},
            dedupe=True,
        )
        return f"resync job {job.id} queued"

    def _recalculate_count(self, issue: ValidationIssue) -> str:
        count = self.entity_store.recalculate_case_count(UUID(issue.entity_id), self.clock())
        if count is None:
            raise ValueError(f"judge {issue.entity_id} no longer exists")
        return f"total_cases set to {count}"

    def _apply_mapping(self, issue: ValidationIssue) -> str:
        mapping = issue.metadata["suggested_mapping"]
        changed = self.entity_store.set_case_outcome(UUID(issue.entity_id), mapping, self.clock())
        return f"outcome set to {mapping!r}" if changed else f"outcome already {mapping!r}"
