"""
JudgeSync - Sync Worker

Claims jobs from the queue and dispatches them to the pipeline registered for
the job's entity type.

Error mapping:
    TransientUpstreamError (incl. CircuitOpen, 429, 5xx) -> retry with backoff
    PermanentUpstreamError, InvalidJobPayload           -> failed, no retry
    JobCancelled                                        -> abandon, status untouched
    PersistenceError                                    -> logged and re-raised;
                                                           recover_stale picks the job up
    anything else                                       -> retry (bounded by max_attempts)

Usage:
    worker = SyncWorker(queue, {EntityType.COURT: court_pipeline, ...})
    worker.run(stop_when_idle=True)
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from uuid import uuid4

from judgesync.core.error_taxonomy import (
    ERR_QUEUE_NO_HANDLER,
    InvalidJobPayload,
    JobCancelled,
    PermanentUpstreamError,
    PersistenceError,
    TransientUpstreamError,
)
from judgesync.core.logging import LogContext, Timer, log_worker_failure, log_worker_start, log_worker_success
from judgesync.core.models import EntityType, SyncJob, validate_job_payload
from judgesync.queue.manager import SyncQueueManager

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"


# =============================================================================
# Job Context
# =============================================================================


class JobContext:
    """What a pipeline sees of the job it is running."""

    def __init__(self, job: SyncJob, payload: Any, queue: SyncQueueManager, worker_id: str):
        self.job = job
        self.payload = payload
        self.queue = queue
        self.worker_id = worker_id

    @property
    def external_id(self) -> Optional[str]:
        return self.job.entity_external_id

    def now(self) -> datetime:
        return self.queue.clock()

    def check_cancelled(self) -> None:
        """Raise JobCancelled if the job was cancelled since it was claimed."""
        if self.queue.is_cancelled(self.job.id):
            raise JobCancelled(self.job.id)

    def enqueue(self, entity_type: EntityType, external_id: Optional[str] = None, **kwargs: Any) -> SyncJob:
        """Fan out a follow-up job (de-duplicated by default)."""
        return self.queue.enqueue(entity_type, external_id, **kwargs)


class Pipeline(Protocol):
    def run(self, ctx: JobContext) -> Dict[str, Any]: ...


class JobOutcome(str, Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class WorkerStats:
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    by_entity: Dict[str, int] = field(default_factory=dict)

    def record(self, entity_type: EntityType, outcome: JobOutcome) -> None:
        self.processed += 1
        self.by_entity[entity_type.value] = self.by_entity.get(entity_type.value, 0) + 1
        if outcome == JobOutcome.COMPLETED:
            self.completed += 1
        elif outcome == JobOutcome.RETRYING:
            self.retried += 1
        elif outcome == JobOutcome.FAILED:
            self.failed += 1
        else:
            self.cancelled += 1


class _NoHandler(InvalidJobPayload):
    error_code = ERR_QUEUE_NO_HANDLER


# =============================================================================
# Worker
# =============================================================================


class SyncWorker:
    """Single-threaded claim/dispatch loop. Run several for parallelism."""

    def __init__(
        self,
        queue: SyncQueueManager,
        pipelines: Mapping[EntityType, Pipeline],
        worker_id: Optional[str] = None,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.pipelines = dict(pipelines)
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._stop = threading.Event()
        self.stats = WorkerStats()

    def stop(self) -> None:
        self._stop.set()

    def run_once(self) -> Optional[JobOutcome]:
        """Claim and process one job. Returns None when nothing is due."""
        job = self.queue.claim(self.worker_id)
        if job is None:
            return None
        outcome = self.process(job)
        self.stats.record(job.entity_type, outcome)
        return outcome

    def run(self, max_jobs: Optional[int] = None, stop_when_idle: bool = False) -> WorkerStats:
        """
        Poll the queue until stopped, ``max_jobs`` are processed, or (with
        ``stop_when_idle``) nothing is due.

        In the long-lived mode a PersistenceError is logged and the loop backs
        off for one poll interval; in the short-lived mode it propagates.
        """
        logger.info(
            f"Worker {self.worker_id} starting",
            extra={"worker_id": self.worker_id},
        )
        processed = 0
        while not self._stop.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break
            try:
                outcome = self.run_once()
            except PersistenceError:
                if stop_when_idle:
                    raise
                logger.exception("Store unavailable; backing off")
                self._sleep(self.poll_interval)
                continue
            if outcome is None:
                if stop_when_idle:
                    break
                self._sleep(self.poll_interval)
                continue
            processed += 1

        logger.info(
            f"Worker {self.worker_id} stopped after {self.stats.processed} job(s)",
            extra={"worker_id": self.worker_id, "count": self.stats.processed},
        )
        return self.stats

    def process(self, job: SyncJob) -> JobOutcome:
        entity_type = job.entity_type.value
        with LogContext(
            run_id=uuid4(),
            job_id=job.id,
            entity_type=entity_type,
            external_id=job.entity_external_id,
            worker_id=self.worker_id,
        ):
            with Timer() as timer:
                log_worker_start(logger, entity_type, job.id, self.worker_id, attempt=job.attempt_count + 1)
                try:
                    payload = validate_job_payload(job.entity_type, job.payload)
                    pipeline = self.pipelines.get(job.entity_type)
                    if pipeline is None:
                        raise _NoHandler(f"no pipeline registered for {entity_type}")
                    ctx = JobContext(job, payload, self.queue, self.worker_id)
                    ctx.check_cancelled()
                    result = pipeline.run(ctx)
                    ctx.check_cancelled()
                except JobCancelled:
                    logger.info(f"Job {job.id} cancelled; abandoning work", extra={"status": "cancelled"})
                    return JobOutcome.CANCELLED
                except PersistenceError as e:
                    logger.error(
                        f"Job {job.id} hit a persistence error: {e}",
                        extra={"error_code": str(e.error_code), "duration_ms": round(timer.elapsed_ms, 2)},
                    )
                    raise
                except (PermanentUpstreamError, InvalidJobPayload) as e:
                    return self._fail(job, e, timer, permanent=True)
                except TransientUpstreamError as e:
                    return self._fail(job, e, timer, permanent=False)
                except Exception as e:
                    logger.exception(f"Unexpected error in {entity_type} pipeline")
                    return self._fail(job, e, timer, permanent=False)

            if not self.queue.complete(job, self.worker_id):
                logger.warning(
                    f"Job {job.id} lost its claim before completion; result discarded",
                    extra={"status": "cancelled"},
                )
                return JobOutcome.CANCELLED
            log_worker_success(logger, entity_type, job.id, timer.elapsed_ms, **_loggable(result))
            return JobOutcome.COMPLETED

    def _fail(self, job: SyncJob, error: Exception, timer: Timer, permanent: bool) -> JobOutcome:
        attempt = job.attempt_count + 1
        terminal = permanent or attempt >= job.max_attempts
        log_worker_failure(
            logger,
            job.entity_type.value,
            job.id,
            error,
            timer.elapsed_ms,
            attempt=attempt,
            max_attempts=job.max_attempts,
            terminal=terminal,
        )
        updated = self.queue.fail(job, self.worker_id, error, permanent=permanent)
        if updated is None:
            logger.warning(f"Job {job.id} lost its claim before the failure was recorded")
            return JobOutcome.CANCELLED
        return JobOutcome.FAILED if terminal else JobOutcome.RETRYING


def _loggable(result: Any) -> Dict[str, Any]:
    """Pipeline counters that fit the structured log's extra fields."""
    if isinstance(result, dict) and "count" in result:
        return {"count": result["count"]}
    return {}
