"""
JudgeSync - Admin Queries

Read-only aggregates behind ``judgesync status`` and any host web layer.
Outputs are plain dicts of counts and short strings ("3 jobs failed"); no
stack traces or raw errors beyond a progress row's own last_error.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Optional
from uuid import UUID

from judgesync.clients.circuit_breaker import CircuitBreaker
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.core.models import EntityType, SyncPhase
from judgesync.queue.manager import SyncQueueManager
from judgesync.quality.reports import health_score
from judgesync.storage.base import EntityStore, ReportStore


def _plural(n: int, noun: str) -> str:
    return f"{n} {noun}{'' if n == 1 else 's'}"


def sync_progress_for(store: EntityStore, entity_type: EntityType, entity_id: UUID) -> Optional[Dict[str, Any]]:
    progress = store.get_progress(entity_type, entity_id)
    if progress is None:
        return None
    return {
        "entity_type": progress.entity_type.value,
        "entity_id": str(progress.entity_id),
        "phase": progress.phase.value,
        "is_analytics_ready": progress.is_analytics_ready,
        "opinions_count": progress.opinions_count,
        "dockets_count": progress.dockets_count,
        "total_cases_count": progress.total_cases_count,
        "error_count": progress.error_count,
        "last_error": progress.last_error,
        "last_error_at": progress.last_error_at.isoformat() if progress.last_error_at else None,
        "last_synced_at": progress.last_synced_at.isoformat() if progress.last_synced_at else None,
    }


def sync_progress_overview(store: EntityStore, entity_type: Optional[EntityType] = None) -> Dict[str, Any]:
    rows = store.list_progress(entity_type)
    phases = Counter(p.phase.value for p in rows)
    return {
        "total": len(rows),
        "by_phase": {phase.value: phases.get(phase.value, 0) for phase in SyncPhase},
        "analytics_ready": sum(1 for p in rows if p.is_analytics_ready),
        "with_errors": sum(1 for p in rows if p.error_count > 0),
    }


def upstream_status(limiter: RateLimiter, breaker: CircuitBreaker) -> Dict[str, Any]:
    upstream = breaker.upstream
    return {
        "upstream": upstream,
        "utilization_percent": round(limiter.utilization(upstream), 1),
        "remaining": limiter.remaining(upstream),
        "reset_in_seconds": round(limiter.reset_in(upstream), 1),
        "breaker_state": breaker.state.value,
        "breaker_failures": breaker.failure_count,
    }


def queue_overview(queue: SyncQueueManager) -> Dict[str, Any]:
    stats = queue.stats()
    messages = []
    if stats.failed:
        messages.append(f"{_plural(stats.failed, 'job')} failed")
    if stats.running:
        messages.append(f"{_plural(stats.running, 'job')} running")
    if stats.pending:
        messages.append(f"{_plural(stats.pending, 'job')} pending")
    return {**stats.model_dump(), "total": stats.total, "messages": messages}


def data_quality_overview(reports: ReportStore, window: int = 5) -> Dict[str, Any]:
    recent = reports.latest(window)
    if not recent:
        return {"last_validation": None, "summary": None, "health_score": health_score([]), "messages": []}
    latest = recent[0]
    messages = []
    if latest.critical_issues:
        messages.append(f"{latest.critical_issues} critical data-quality issues")
    return {
        "last_validation": latest.completed_at.isoformat(),
        "validation_id": latest.validation_id,
        "summary": latest.summary,
        "total_issues": latest.total_issues,
        "critical_issues": latest.critical_issues,
        "health_score": health_score(recent),
        "messages": messages,
    }
