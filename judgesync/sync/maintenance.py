"""
JudgeSync - Maintenance and Fan-out Jobs

``cleanup`` jobs recover stale leases and purge old terminal jobs.
``full`` jobs fan out into court discovery followed by judge discovery.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from judgesync.core.models import CleanupJobPayload, EntityType, FullJobPayload
from judgesync.queue.manager import SyncQueueManager
from judgesync.queue.worker import JobContext

logger = logging.getLogger(__name__)


class CleanupPipeline:
    def __init__(self, queue: SyncQueueManager, lease_seconds: int = 900, retention_days: int = 30):
        self.queue = queue
        self.lease_seconds = lease_seconds
        self.retention_days = retention_days

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        payload: CleanupJobPayload = ctx.payload
        recovered = self.queue.recover_stale(payload.lease_seconds or self.lease_seconds)
        purged = self.queue.purge(payload.retention_days or self.retention_days)
        return {"count": recovered + purged, "recovered": recovered, "purged": purged}


class FullSyncPipeline:
    """Court discovery outranks judge discovery so assignments resolve on the first pass."""

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        payload: FullJobPayload = ctx.payload
        base = ctx.job.priority
        jurisdiction = {"jurisdiction": payload.jurisdiction} if payload.jurisdiction else {}
        court_job = ctx.enqueue(
            EntityType.COURT,
            None,
            priority=base + 1,
            payload={"reason": "full_sync", **jurisdiction},
        )
        judge_job = ctx.enqueue(
            EntityType.JUDGE,
            None,
            priority=base,
            payload={"reason": "full_sync", **jurisdiction},
        )
        logger.info(
            f"Full sync queued court discovery {court_job.id} and judge discovery {judge_job.id}",
            extra={"count": 2},
        )
        return {"count": 2, "court_job_id": court_job.id, "judge_job_id": judge_job.id}
