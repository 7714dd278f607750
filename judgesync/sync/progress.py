"""
JudgeSync - Sync Progress

Phase derivation and the read-modify-write helpers the pipelines use to keep
``sync_progress`` current. Nothing outside ``judgesync.sync`` writes progress.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from judgesync.core.models import EntityType, SyncPhase, SyncProgress
from judgesync.storage.base import EntityStore

MAX_PROGRESS_ERROR_LENGTH = 500


def derive_phase(progress: SyncProgress) -> SyncPhase:
    """Furthest phase whose prerequisites are all present."""
    has_opinions = progress.opinions_count > 0
    has_dockets = progress.dockets_count > 0
    if progress.has_positions and progress.has_details and has_opinions and has_dockets:
        return SyncPhase.COMPLETE
    if progress.has_positions and progress.has_details and has_opinions:
        return SyncPhase.DOCKETS
    if progress.has_positions and progress.has_details:
        return SyncPhase.OPINIONS
    if progress.has_positions:
        return SyncPhase.DETAILS
    return SyncPhase.DISCOVERY


def load_progress(store: EntityStore, entity_type: EntityType, entity_id: UUID) -> SyncProgress:
    return store.get_progress(entity_type, entity_id) or SyncProgress(
        entity_type=entity_type, entity_id=entity_id
    )


def update_judge_progress(
    store: EntityStore,
    judge_id: UUID,
    now: datetime,
    min_cases_for_analytics: int,
    **changes: Any,
) -> SyncProgress:
    """Apply counter/flag changes, then re-derive phase and the analytics-ready flag."""
    progress = load_progress(store, EntityType.JUDGE, judge_id).model_copy(update=changes)
    progress = progress.model_copy(
        update={
            "phase": derive_phase(progress),
            "is_analytics_ready": progress.total_cases_count >= min_cases_for_analytics,
            "last_synced_at": now,
            "updated_at": now,
        }
    )
    return store.save_progress(progress)


def mark_court_synced(store: EntityStore, court_id: UUID, now: datetime) -> SyncProgress:
    progress = load_progress(store, EntityType.COURT, court_id).model_copy(
        update={
            "phase": SyncPhase.COMPLETE,
            "has_details": True,
            "last_synced_at": now,
            "updated_at": now,
        }
    )
    return store.save_progress(progress)


def record_progress_error(
    store: EntityStore,
    entity_type: EntityType,
    entity_id: UUID,
    error: BaseException | str,
    now: datetime,
) -> SyncProgress:
    progress = load_progress(store, entity_type, entity_id)
    progress = progress.model_copy(
        update={
            "error_count": progress.error_count + 1,
            "last_error": str(error)[:MAX_PROGRESS_ERROR_LENGTH],
            "last_error_at": now,
            "updated_at": now,
        }
    )
    return store.save_progress(progress)
