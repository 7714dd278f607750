"""Entity sync pipelines, one per job entity type."""

from typing import Dict

from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.config import Settings
from judgesync.core.models import EntityType
from judgesync.queue.manager import SyncQueueManager
from judgesync.queue.worker import Pipeline
from judgesync.storage.base import EntityStore
from judgesync.sync.court_sync import CourtSyncPipeline
from judgesync.sync.decision_sync import DecisionSyncPipeline
from judgesync.sync.judge_sync import JudgeSyncPipeline
from judgesync.sync.maintenance import CleanupPipeline, FullSyncPipeline


def build_pipelines(
    client: CourtListenerClient,
    store: EntityStore,
    queue: SyncQueueManager,
    settings: Settings,
) -> Dict[EntityType, Pipeline]:
    """Handler registry for ``SyncWorker``."""
    return {
        EntityType.COURT: CourtSyncPipeline(client, store),
        EntityType.JUDGE: JudgeSyncPipeline(
            client,
            store,
            discovery_limit=settings.judge_discovery_limit,
            min_cases_for_analytics=settings.min_cases_for_analytics,
        ),
        EntityType.DECISION: DecisionSyncPipeline(
            client,
            store,
            max_documents_per_judge=settings.max_documents_per_judge,
            min_cases_for_analytics=settings.min_cases_for_analytics,
        ),
        EntityType.CLEANUP: CleanupPipeline(
            queue,
            lease_seconds=settings.queue_lease_seconds,
            retention_days=settings.queue_retention_days,
        ),
        EntityType.FULL: FullSyncPipeline(),
    }


__all__ = [
    "CleanupPipeline",
    "CourtSyncPipeline",
    "DecisionSyncPipeline",
    "FullSyncPipeline",
    "JudgeSyncPipeline",
    "build_pipelines",
]
