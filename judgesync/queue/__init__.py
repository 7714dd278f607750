"""Sync queue: job lifecycle manager and the claim/dispatch worker."""

from judgesync.queue.manager import RetryPolicy, SyncQueueManager
from judgesync.queue.worker import JobContext, JobOutcome, SyncWorker, WorkerStats

__all__ = [
    "JobContext",
    "JobOutcome",
    "RetryPolicy",
    "SyncQueueManager",
    "SyncWorker",
    "WorkerStats",
]
