"""
JudgeSync - Runtime Wiring

Builds the process-owned service graph: the rate limiter and circuit breaker
in front of the API client, the stores for the chosen backend, the queue
manager, the pipeline registry, the validator and the auto-fixer.

With the Postgres backend the limiter and breaker live in the database, so
every worker process (and ``judgesync status``) sees one shared budget and
one breaker. The memory backend keeps both in process.

Usage:
    runtime = build_runtime(get_settings(), backend="memory")
    try:
        SyncWorker(runtime.queue, runtime.pipelines).run(stop_when_idle=True)
    finally:
        runtime.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Literal, Optional

import httpx
import psycopg

from judgesync.clients.circuit_breaker import CircuitBreaker
from judgesync.clients.courtlistener import CourtListenerClient
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.config import Settings
from judgesync.core.error_taxonomy import ERR_CONFIG_MISSING_DSN, ConfigurationError
from judgesync.core.models import EntityType
from judgesync.queue.manager import RetryPolicy, SyncQueueManager
from judgesync.queue.worker import Pipeline
from judgesync.quality.fixer import AutoFixer
from judgesync.quality.rules import Thresholds
from judgesync.quality.validator import DataQualityValidator
from judgesync.storage.base import EntityStore, JobStore, ReportStore
from judgesync.storage.memory import InMemoryEntityStore, InMemoryJobStore, InMemoryReportStore
from judgesync.storage.postgres import (
    PostgresCircuitBreaker,
    PostgresEntityStore,
    PostgresJobStore,
    PostgresRateLimiter,
    PostgresReportStore,
    connect_with_retry,
)
from judgesync.sync import build_pipelines

logger = logging.getLogger(__name__)

Backend = Literal["postgres", "memory"]


@dataclass
class Runtime:
    settings: Settings
    backend: str
    limiter: RateLimiter
    breaker: CircuitBreaker
    client: CourtListenerClient
    job_store: JobStore
    entity_store: EntityStore
    report_store: ReportStore
    queue: SyncQueueManager
    pipelines: Dict[EntityType, Pipeline]
    validator: DataQualityValidator
    fixer: AutoFixer
    conn: Optional[psycopg.Connection] = None
    _closed: bool = field(default=False, repr=False)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.client.close()
        if self.conn is not None:
            self.conn.close()
        logger.debug(f"Runtime closed ({self.backend})")

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.queue_max_attempts,
        base_delay_seconds=settings.queue_backoff_base_seconds,
        max_delay_seconds=settings.queue_backoff_max_seconds,
    )


def build_client(
    settings: Settings,
    limiter: RateLimiter,
    breaker: CircuitBreaker,
    transport: Optional[httpx.BaseTransport] = None,
) -> CourtListenerClient:
    api_key = settings.courtlistener_api_key.get_secret_value() if settings.courtlistener_api_key else None
    return CourtListenerClient(
        settings.courtlistener_base_url,
        api_key,
        rate_limiter=limiter,
        circuit_breaker=breaker,
        timeout=settings.http_timeout_seconds,
        max_retries=settings.max_retries,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_wait_seconds=settings.retry_max_wait_seconds,
        rate_limit_max_wait=settings.rate_limit_max_wait_seconds,
        transport=transport,
    )


def connect(settings: Settings, worker_type: str = "worker") -> psycopg.Connection:
    """
    Open the Postgres connection for this process.

    Raises:
        ConfigurationError: no database_url configured
        PersistenceError: the database stayed unreachable
    """
    if not settings.database_url:
        raise ConfigurationError(
            "JUDGESYNC_DATABASE_URL is not set; use --backend memory for a dry run",
            error_code=ERR_CONFIG_MISSING_DSN,
        )
    return connect_with_retry(settings.database_url, worker_type=worker_type)


def build_runtime(
    settings: Settings,
    backend: Backend = "postgres",
    transport: Optional[httpx.BaseTransport] = None,
    worker_type: str = "worker",
) -> Runtime:
    """Wire every service for one process. Call ``close()`` when done."""
    limits = dict(
        hourly_limit=settings.rate_limit_per_hour,
        safety_ratio=settings.rate_limit_safety_ratio,
        warning_threshold=settings.rate_limit_warning_threshold,
    )
    breaker_options = dict(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
    )

    conn: Optional[psycopg.Connection] = None
    if backend == "postgres":
        conn = connect(settings, worker_type=worker_type)
        job_store: JobStore = PostgresJobStore(conn)
        entity_store: EntityStore = PostgresEntityStore(conn)
        report_store: ReportStore = PostgresReportStore(conn)
        limiter: RateLimiter = PostgresRateLimiter(conn, **limits)
        breaker: CircuitBreaker = PostgresCircuitBreaker(conn, **breaker_options)
    elif backend == "memory":
        job_store = InMemoryJobStore()
        entity_store = InMemoryEntityStore()
        report_store = InMemoryReportStore()
        limiter = RateLimiter(**limits)
        breaker = CircuitBreaker(**breaker_options)
    else:
        raise ConfigurationError(f"unknown storage backend {backend!r}")

    client = build_client(settings, limiter, breaker, transport=transport)
    queue = SyncQueueManager(job_store, retry_policy_from_settings(settings))
    thresholds = Thresholds.from_settings(settings)

    logger.info(
        f"Runtime ready (backend={backend}, env={settings.environment})",
        extra={"upstream": breaker.upstream},
    )
    return Runtime(
        settings=settings,
        backend=backend,
        limiter=limiter,
        breaker=breaker,
        client=client,
        job_store=job_store,
        entity_store=entity_store,
        report_store=report_store,
        queue=queue,
        pipelines=build_pipelines(client, entity_store, queue, settings),
        validator=DataQualityValidator(entity_store, report_store, thresholds),
        fixer=AutoFixer(entity_store, queue),
        conn=conn,
    )
