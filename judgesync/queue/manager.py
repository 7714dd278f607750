"""
JudgeSync - Sync Queue Manager

The only component allowed to move a job between states.

Lifecycle:
    pending --claim--> running --complete--> completed
                          |--fail (attempts left)--> pending (scheduled_for = now + backoff)
                          |--fail (exhausted / permanent)--> failed
    pending|running --cancel--> cancelled

Every transition out of ``running`` is a compare-and-set on
``(status='running', claimed_by=worker)``, so a job cancelled mid-flight or
recovered from a dead worker cannot be overwritten by a late writer.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from judgesync.core.error_taxonomy import ERR_QUEUE_LEASE_EXPIRED, JudgeSyncError
from judgesync.core.models import (
    EntityType,
    JobStatus,
    QueueStats,
    SyncJob,
    SyncOperation,
    TERMINAL_STATUSES,
    validate_job_payload,
)
from judgesync.storage.base import JobStore

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Job-level retry configuration."""

    max_attempts: int = 5
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    exponential_base: float = 2.0
    jitter: bool = False

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
        delay = self.base_delay_seconds * (self.exponential_base ** (max(attempt, 1) - 1))
        delay = min(delay, self.max_delay_seconds)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


def _error_text(error: str | BaseException) -> str:
    if isinstance(error, JudgeSyncError):
        text = error.describe()
    elif isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = error
    return text[:MAX_ERROR_LENGTH]


# =============================================================================
# Manager
# =============================================================================


class SyncQueueManager:
    """Enqueue, claim and transition sync jobs over a ``JobStore``."""

    def __init__(
        self,
        store: JobStore,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

    def enqueue(
        self,
        entity_type: EntityType | str,
        external_id: Optional[str] = None,
        *,
        operation: SyncOperation | str = SyncOperation.UPDATE,
        priority: int = 0,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        dedupe: bool = True,
    ) -> SyncJob:
        """
        Add a pending job.

        The payload is validated against the entity type's model before it is
        stored. With ``dedupe`` an already pending or running job for the same
        (entity_type, external_id) is returned instead of a new one.

        Raises:
            InvalidJobPayload: payload rejected for this entity type
        """
        entity_type = EntityType(entity_type)
        validated = validate_job_payload(entity_type, payload)
        now = self.clock()
        job, created = self.store.insert(
            entity_type=entity_type,
            entity_external_id=external_id,
            operation=SyncOperation(operation),
            priority=priority,
            payload=validated.model_dump(mode="json", exclude_none=True),
            max_attempts=max_attempts or self.retry_policy.max_attempts,
            scheduled_for=scheduled_for or now,
            now=now,
            dedupe=dedupe,
        )
        if created:
            logger.info(
                f"Enqueued {entity_type.value} job {job.id}",
                extra={
                    "job_id": job.id,
                    "entity_type": entity_type.value,
                    "external_id": external_id,
                },
            )
        else:
            logger.debug(f"Job {job.id} already active for {entity_type.value}:{external_id}")
        return job

    def claim(self, worker_id: str) -> Optional[SyncJob]:
        """Claim the highest-priority eligible job, or None when nothing is due."""
        job = self.store.claim_next(worker_id, self.clock())
        if job is not None:
            logger.debug(
                f"Claimed job {job.id}",
                extra={"job_id": job.id, "worker_id": worker_id, "attempt": job.attempt_count + 1},
            )
        return job

    def complete(self, job: SyncJob, worker_id: str) -> bool:
        """Mark a claimed job completed. False if the claim was lost (cancelled or recovered)."""
        finished = self.store.finish(
            job.id,
            worker_id,
            status=JobStatus.COMPLETED,
            attempt_count=job.attempt_count,
            scheduled_for=None,
            last_error=None,
            now=self.clock(),
        )
        return finished is not None

    def fail(
        self,
        job: SyncJob,
        worker_id: str,
        error: str | BaseException,
        permanent: bool = False,
    ) -> Optional[SyncJob]:
        """
        Record a failed attempt.

        Requeues with backoff while attempts remain; otherwise the job becomes
        terminally ``failed``. Returns the updated job, or None if the claim
        was lost.
        """
        now = self.clock()
        attempts = job.attempt_count + 1
        message = _error_text(error)

        if permanent or attempts >= job.max_attempts:
            updated = self.store.finish(
                job.id,
                worker_id,
                status=JobStatus.FAILED,
                attempt_count=attempts,
                scheduled_for=None,
                last_error=message,
                now=now,
            )
            if updated is not None:
                logger.error(
                    f"Job {job.id} failed after {attempts} attempt(s): {message}",
                    extra={
                        "job_id": job.id,
                        "attempt": attempts,
                        "max_attempts": job.max_attempts,
                        "status": "failed",
                    },
                )
            return updated

        delay = self.retry_policy.get_delay(attempts)
        updated = self.store.finish(
            job.id,
            worker_id,
            status=JobStatus.PENDING,
            attempt_count=attempts,
            scheduled_for=now + timedelta(seconds=delay),
            last_error=message,
            now=now,
        )
        if updated is not None:
            logger.info(
                f"Job {job.id} scheduled for retry in {delay:.1f}s",
                extra={"job_id": job.id, "attempt": attempts, "max_attempts": job.max_attempts},
            )
        return updated

    def cancel(self, job_id: int) -> bool:
        """Cancel a pending or running job. Workers notice cooperatively."""
        cancelled = self.store.cancel(job_id, self.clock())
        if cancelled is not None:
            logger.info(f"Job {job_id} cancelled", extra={"job_id": job_id, "status": "cancelled"})
        return cancelled is not None

    def is_cancelled(self, job_id: int) -> bool:
        job = self.store.get(job_id)
        return job is not None and job.status == JobStatus.CANCELLED

    def get(self, job_id: int) -> Optional[SyncJob]:
        return self.store.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[SyncJob]:
        return self.store.list_jobs(status, limit)

    def stats(self) -> QueueStats:
        return QueueStats(**self.store.counts_by_status())

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def recover_stale(self, lease_seconds: int) -> int:
        """Treat running jobs claimed more than ``lease_seconds`` ago as failed attempts."""
        cutoff = self.clock() - timedelta(seconds=lease_seconds)
        recovered = 0
        for job in self.store.list_stale(cutoff):
            error = JudgeSyncError(
                f"worker {job.claimed_by} held the claim longer than {lease_seconds}s",
                error_code=ERR_QUEUE_LEASE_EXPIRED,
            )
            if self.fail(job, job.claimed_by or "", error) is not None:
                recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale job(s)", extra={"count": recovered})
        return recovered

    def purge(self, retention_days: int) -> int:
        """Delete terminal jobs last touched more than ``retention_days`` ago."""
        cutoff = self.clock() - timedelta(days=retention_days)
        removed = self.store.purge(TERMINAL_STATUSES, cutoff)
        if removed:
            logger.info(f"Purged {removed} finished job(s)", extra={"count": removed})
        return removed
