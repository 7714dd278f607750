"""
JudgeSync - Postgres Stores

psycopg 3 implementations of the store protocols. Connections are opened in
autocommit mode with ``dict_row``; every multi-statement operation runs in an
explicit ``conn.transaction()`` so each queue transition and each upsert is
independently atomic.

The claim uses ``FOR UPDATE SKIP LOCKED`` inside a CTE: a row locked by a
concurrent claimer is skipped, never waited on, so two workers can never
select the same job.

Enum values are always passed as ``.value``: psycopg dumps Enum members by
name otherwise.

``PostgresRateLimiter`` and ``PostgresCircuitBreaker`` move the upstream
gates into the database so every worker process shares one request budget
and one breaker.
"""

from __future__ import annotations

import logging
import random
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime
from typing import Any, Callable, Dict, Generator, Iterable, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from judgesync import __version__
from judgesync.clients.circuit_breaker import BreakerRecord, BreakerState, CircuitBreaker
from judgesync.clients.rate_limiter import RateLimiter
from judgesync.core.error_taxonomy import (
    ERR_DB_CONNECTION,
    ERR_DB_CONSTRAINT,
    ERR_DB_QUERY_ERROR,
    PersistenceError,
)
from judgesync.core.models import (
    AssignmentRecord,
    Court,
    CourtAssignment,
    CourtRecord,
    Decision,
    DecisionRecord,
    DecisionSource,
    EntitySnapshot,
    EntityType,
    JobStatus,
    Judge,
    JudgeRecord,
    SyncJob,
    SyncOperation,
    SyncProgress,
    ValidationReport,
)
from judgesync.storage.base import CASE_REFERENCE_FIELDS

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 10.0  # seconds
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_JITTER_FACTOR = 0.2


# =============================================================================
# Connection with Retry
# =============================================================================


def get_safe_application_name(worker_type: str = "worker") -> str:
    """Postgres-safe application_name, e.g. ``judgesync_v0_1_0_worker``."""
    safe_version = __version__.replace(".", "_").replace(" ", "_").replace("-", "_")
    safe_worker = worker_type.replace(" ", "_").replace("-", "_").replace(".", "_")
    return f"judgesync_v{safe_version}_{safe_worker}"


@dataclass
class RetryConfig:
    """Configuration for connection retry behavior."""

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    connect_timeout: int = 10  # seconds


def connect_with_retry(
    dsn: str,
    worker_type: str = "worker",
    config: RetryConfig | None = None,
) -> psycopg.Connection:
    """
    Connect to Postgres with exponential backoff and jitter.

    Raises:
        PersistenceError: all attempts failed
    """
    config = config or RetryConfig()
    last_error: Exception | None = None
    delay = config.initial_delay

    for attempt in range(1, config.max_attempts + 1):
        try:
            logger.info(
                f"[{worker_type}] Connecting to database (attempt {attempt}/{config.max_attempts})"
            )
            start_time = time.monotonic()
            conn = psycopg.connect(
                dsn,
                autocommit=True,
                connect_timeout=config.connect_timeout,
                row_factory=dict_row,
                application_name=get_safe_application_name(worker_type),
            )
            elapsed_ms = (time.monotonic() - start_time) * 1000
            logger.info(f"[{worker_type}] Database connection established ({elapsed_ms:.0f}ms)")
            return conn
        except psycopg.OperationalError as e:
            last_error = e
            logger.warning(f"[{worker_type}] Connection attempt {attempt} failed: {e}")

        if attempt < config.max_attempts:
            jitter = random.uniform(-config.jitter_factor, config.jitter_factor) * delay
            actual_delay = max(config.initial_delay, min(delay + jitter, config.max_delay))
            logger.info(f"[{worker_type}] Waiting {actual_delay:.2f}s before retry...")
            time.sleep(actual_delay)
            delay = min(delay * 2, config.max_delay)

    raise PersistenceError(
        f"database unavailable after {config.max_attempts} attempts: {last_error}",
        error_code=ERR_DB_CONNECTION,
    )


@contextmanager
def _db_errors(operation: str) -> Generator[None, None, None]:
    """Re-raise psycopg errors as PersistenceError with a stable code."""
    try:
        yield
    except psycopg.IntegrityError as e:
        raise PersistenceError(f"{operation}: {e}", error_code=ERR_DB_CONSTRAINT) from e
    except psycopg.OperationalError as e:
        raise PersistenceError(f"{operation}: {e}", error_code=ERR_DB_CONNECTION) from e
    except psycopg.Error as e:
        raise PersistenceError(f"{operation}: {e}", error_code=ERR_DB_QUERY_ERROR) from e


# =============================================================================
# Jobs
# =============================================================================

CLAIM_SQL = """
WITH candidate AS (
    SELECT id
    FROM sync_queue
    WHERE status = 'pending'
      AND scheduled_for <= %(now)s
    ORDER BY priority DESC, scheduled_for ASC, id ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
UPDATE sync_queue q
SET status = 'running',
    claimed_by = %(worker_id)s,
    claimed_at = %(now)s,
    updated_at = %(now)s
FROM candidate c
WHERE q.id = c.id
RETURNING q.*
"""

FINISH_SQL = """
UPDATE sync_queue
SET status = %(status)s,
    attempt_count = %(attempt_count)s,
    last_error = %(last_error)s,
    updated_at = %(now)s,
    scheduled_for = CASE WHEN %(requeue)s THEN %(scheduled_for)s::timestamptz ELSE scheduled_for END,
    claimed_by = CASE WHEN %(requeue)s THEN NULL ELSE claimed_by END,
    claimed_at = CASE WHEN %(requeue)s THEN NULL ELSE claimed_at END,
    completed_at = CASE WHEN %(requeue)s THEN NULL ELSE %(now)s::timestamptz END
WHERE id = %(job_id)s
  AND status = 'running'
  AND claimed_by = %(worker_id)s
RETURNING *
"""


class PostgresJobStore:
    """``sync_queue`` table access."""

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def _one(self, query: Any, params: Any) -> Optional[SyncJob]:
        row = self.conn.execute(query, params).fetchone()
        return SyncJob.model_validate(row) if row else None

    def insert(
        self,
        *,
        entity_type: EntityType,
        entity_external_id: Optional[str],
        operation: SyncOperation,
        priority: int,
        payload: Dict[str, Any],
        max_attempts: int,
        scheduled_for: datetime,
        now: datetime,
        dedupe: bool = False,
    ) -> Tuple[SyncJob, bool]:
        with _db_errors("enqueue"), self.conn.transaction():
            if dedupe:
                # Serialises concurrent enqueues for the same entity.
                self.conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{entity_type.value}:{entity_external_id or ''}",),
                )
                existing = self._one(
                    """
                    SELECT * FROM sync_queue
                    WHERE entity_type = %s
                      AND entity_external_id IS NOT DISTINCT FROM %s
                      AND status IN ('pending', 'running')
                    ORDER BY id
                    LIMIT 1
                    """,
                    (entity_type.value, entity_external_id),
                )
                if existing is not None:
                    return existing, False
            job = self._one(
                """
                INSERT INTO sync_queue (
                    entity_type, entity_external_id, operation, priority, status,
                    max_attempts, scheduled_for, payload, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entity_type.value,
                    entity_external_id,
                    operation.value,
                    priority,
                    max_attempts,
                    scheduled_for,
                    Jsonb(payload),
                    now,
                    now,
                ),
            )
        if job is None:
            raise PersistenceError(
                f"enqueue {entity_type.value}:{entity_external_id}: INSERT returned no row",
                error_code=ERR_DB_QUERY_ERROR,
            )
        return job, True

    def get(self, job_id: int) -> Optional[SyncJob]:
        with _db_errors("get job"):
            return self._one("SELECT * FROM sync_queue WHERE id = %s", (job_id,))

    def claim_next(self, worker_id: str, now: datetime) -> Optional[SyncJob]:
        with _db_errors("claim"), self.conn.transaction():
            return self._one(CLAIM_SQL, {"worker_id": worker_id, "now": now})

    def finish(
        self,
        job_id: int,
        worker_id: str,
        *,
        status: JobStatus,
        attempt_count: int,
        scheduled_for: Optional[datetime],
        last_error: Optional[str],
        now: datetime,
    ) -> Optional[SyncJob]:
        params = {
            "job_id": job_id,
            "worker_id": worker_id,
            "status": status.value,
            "attempt_count": attempt_count,
            "last_error": last_error,
            "now": now,
            "requeue": status == JobStatus.PENDING,
            "scheduled_for": scheduled_for,
        }
        with _db_errors("finish job"), self.conn.transaction():
            return self._one(FINISH_SQL, params)

    def cancel(self, job_id: int, now: datetime) -> Optional[SyncJob]:
        with _db_errors("cancel job"), self.conn.transaction():
            return self._one(
                """
                UPDATE sync_queue
                SET status = 'cancelled', updated_at = %(now)s, completed_at = %(now)s
                WHERE id = %(job_id)s AND status IN ('pending', 'running')
                RETURNING *
                """,
                {"job_id": job_id, "now": now},
            )

    def list_stale(self, claimed_before: datetime) -> List[SyncJob]:
        with _db_errors("list stale jobs"):
            rows = self.conn.execute(
                "SELECT * FROM sync_queue WHERE status = 'running' AND claimed_at < %s ORDER BY id",
                (claimed_before,),
            ).fetchall()
        return [SyncJob.model_validate(r) for r in rows]

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[SyncJob]:
        with _db_errors("list jobs"):
            if status is None:
                rows = self.conn.execute(
                    "SELECT * FROM sync_queue ORDER BY priority DESC, scheduled_for, id LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    """
                    SELECT * FROM sync_queue WHERE status = %s
                    ORDER BY priority DESC, scheduled_for, id LIMIT %s
                    """,
                    (status.value, limit),
                ).fetchall()
        return [SyncJob.model_validate(r) for r in rows]

    def counts_by_status(self) -> Dict[str, int]:
        with _db_errors("queue stats"):
            rows = self.conn.execute(
                "SELECT status, count(*) AS n FROM sync_queue GROUP BY status"
            ).fetchall()
        return {r["status"]: int(r["n"]) for r in rows}

    def purge(self, statuses: Iterable[JobStatus], finished_before: datetime) -> int:
        values = [s.value for s in statuses]
        with _db_errors("purge jobs"), self.conn.transaction():
            cur = self.conn.execute(
                "DELETE FROM sync_queue WHERE status = ANY(%s) AND updated_at < %s",
                (values, finished_before),
            )
            return cur.rowcount


# =============================================================================
# Entities
# =============================================================================

COURT_COLUMNS = ("external_id", "name", "slug", "jurisdiction", "court_type", "url")
JUDGE_COLUMNS = (
    "external_id",
    "name",
    "slug",
    "jurisdiction",
    "court_id",
    "appointed_date",
    "education",
    "political_affiliation",
)
CASE_COLUMNS = (
    "external_id",
    "case_name",
    "docket_number",
    "judge_id",
    "court_id",
    "decision_date",
    "outcome",
    "source",
    "jurisdiction",
)
PROGRESS_COLUMNS = (
    "entity_type",
    "entity_id",
    "phase",
    "has_positions",
    "has_details",
    "opinions_count",
    "dockets_count",
    "total_cases_count",
    "is_analytics_ready",
    "error_count",
    "last_error",
    "last_error_at",
    "last_synced_at",
    "updated_at",
)


def _upsert_sql(table: str, columns: Sequence[str]) -> sql.Composed:
    all_columns = [*columns, "created_at", "updated_at", "last_synced_at"]
    updates = [
        sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
        for c in [*columns, "updated_at", "last_synced_at"]
        if c != "external_id"
    ]
    return sql.SQL(
        "INSERT INTO {table} ({cols}) VALUES ({vals}) "
        "ON CONFLICT (external_id) DO UPDATE SET {updates} "
        "RETURNING *, (xmax = 0) AS inserted"
    ).format(
        table=sql.Identifier(table),
        cols=sql.SQL(", ").join(map(sql.Identifier, all_columns)),
        vals=sql.SQL(", ").join(sql.Placeholder(c) for c in all_columns),
        updates=sql.SQL(", ").join(updates),
    )


def _plain(record: Any) -> Dict[str, Any]:
    return record.model_dump(mode="json") | {
        k: v for k, v in record.model_dump().items() if isinstance(v, (UUID, date))
    }


class PostgresEntityStore:
    """``courts``, ``judges``, ``court_assignments``, ``cases`` and ``sync_progress``."""

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def _upsert(self, table: str, columns: Sequence[str], model: Any, record: Any, now: datetime):
        params = {k: Jsonb(v) if isinstance(v, (list, dict)) else v for k, v in _plain(record).items()}
        params.update(created_at=now, updated_at=now, last_synced_at=now)
        with _db_errors(f"upsert {table}"), self.conn.transaction():
            row = self.conn.execute(_upsert_sql(table, columns), params).fetchone()
        inserted = bool(row.pop("inserted"))
        return model.model_validate(row), inserted

    def _rows(self, query: Any, params: Any = None) -> List[Dict[str, Any]]:
        with _db_errors("select"):
            return self.conn.execute(query, params).fetchall()

    # Courts

    def upsert_court(self, record: CourtRecord, now: datetime) -> Tuple[Court, bool]:
        return self._upsert("courts", COURT_COLUMNS, Court, record, now)

    def get_court_by_external_id(self, external_id: str) -> Optional[Court]:
        rows = self._rows("SELECT * FROM courts WHERE external_id = %s", (external_id,))
        return Court.model_validate(rows[0]) if rows else None

    def list_courts(self, jurisdiction: Optional[str] = None) -> List[Court]:
        if jurisdiction:
            rows = self._rows(
                "SELECT * FROM courts WHERE upper(jurisdiction) = upper(%s) ORDER BY name",
                (jurisdiction,),
            )
        else:
            rows = self._rows("SELECT * FROM courts ORDER BY name")
        return [Court.model_validate(r) for r in rows]

    # Judges

    def upsert_judge(self, record: JudgeRecord, now: datetime) -> Tuple[Judge, bool]:
        return self._upsert("judges", JUDGE_COLUMNS, Judge, record, now)

    def get_judge(self, judge_id: UUID) -> Optional[Judge]:
        rows = self._rows("SELECT * FROM judges WHERE id = %s", (judge_id,))
        return Judge.model_validate(rows[0]) if rows else None

    def get_judge_by_external_id(self, external_id: str) -> Optional[Judge]:
        rows = self._rows("SELECT * FROM judges WHERE external_id = %s", (external_id,))
        return Judge.model_validate(rows[0]) if rows else None

    def list_judges(self) -> List[Judge]:
        return [Judge.model_validate(r) for r in self._rows("SELECT * FROM judges ORDER BY name")]

    # Assignments

    def upsert_assignment(self, judge_id: UUID, record: AssignmentRecord) -> CourtAssignment:
        params = {"judge_id": judge_id, **_plain(record)}
        with _db_errors("upsert assignment"), self.conn.transaction():
            row = self.conn.execute(
                """
                INSERT INTO court_assignments (
                    judge_id, court_id, assignment_type, start_date, end_date, position_title
                )
                VALUES (
                    %(judge_id)s, %(court_id)s, %(assignment_type)s, %(start_date)s,
                    %(end_date)s, %(position_title)s
                )
                ON CONFLICT (judge_id, court_id, start_date) DO UPDATE
                SET assignment_type = EXCLUDED.assignment_type,
                    end_date = EXCLUDED.end_date,
                    position_title = EXCLUDED.position_title
                RETURNING *
                """,
                params,
            ).fetchone()
        return CourtAssignment.model_validate(row)

    def list_assignments(self, judge_id: Optional[UUID] = None) -> List[CourtAssignment]:
        if judge_id is None:
            rows = self._rows("SELECT * FROM court_assignments ORDER BY judge_id, start_date")
        else:
            rows = self._rows(
                "SELECT * FROM court_assignments WHERE judge_id = %s ORDER BY start_date",
                (judge_id,),
            )
        return [CourtAssignment.model_validate(r) for r in rows]

    # Decisions

    def upsert_decision(self, record: DecisionRecord, now: datetime) -> Tuple[Decision, bool]:
        return self._upsert("cases", CASE_COLUMNS, Decision, record, now)

    def list_cases(self) -> List[Decision]:
        return [Decision.model_validate(r) for r in self._rows("SELECT * FROM cases")]

    def count_cases_for_judge(self, judge_id: UUID, source: Optional[DecisionSource] = None) -> int:
        if source is None:
            rows = self._rows("SELECT count(*) AS n FROM cases WHERE judge_id = %s", (judge_id,))
        else:
            rows = self._rows(
                "SELECT count(*) AS n FROM cases WHERE judge_id = %s AND source = %s",
                (judge_id, source.value),
            )
        return int(rows[0]["n"])

    # Repairs

    def recalculate_case_count(self, judge_id: UUID, now: datetime) -> Optional[int]:
        with _db_errors("recalculate case count"), self.conn.transaction():
            row = self.conn.execute(
                """
                WITH actual AS (SELECT count(*)::int AS n FROM cases WHERE judge_id = %(id)s)
                UPDATE judges j
                SET total_cases = actual.n,
                    updated_at = CASE WHEN j.total_cases = actual.n THEN j.updated_at
                                      ELSE %(now)s END
                FROM actual
                WHERE j.id = %(id)s
                RETURNING j.total_cases
                """,
                {"id": judge_id, "now": now},
            ).fetchone()
        return int(row["total_cases"]) if row else None

    def nullify_case_reference(self, case_id: UUID, field: str, now: datetime) -> bool:
        if field not in CASE_REFERENCE_FIELDS:
            raise ValueError(f"not a case reference: {field}")
        query = sql.SQL(
            "UPDATE cases SET {col} = NULL, updated_at = %s WHERE id = %s AND {col} IS NOT NULL"
        ).format(col=sql.Identifier(field))
        with _db_errors("nullify case reference"), self.conn.transaction():
            return self.conn.execute(query, (now, case_id)).rowcount > 0

    def set_case_outcome(self, case_id: UUID, outcome: str, now: datetime) -> bool:
        with _db_errors("set case outcome"), self.conn.transaction():
            cur = self.conn.execute(
                """
                UPDATE cases SET outcome = %s, updated_at = %s
                WHERE id = %s AND outcome IS DISTINCT FROM %s
                """,
                (outcome, now, case_id, outcome),
            )
            return cur.rowcount > 0

    # Progress

    def get_progress(self, entity_type: EntityType, entity_id: UUID) -> Optional[SyncProgress]:
        rows = self._rows(
            "SELECT * FROM sync_progress WHERE entity_type = %s AND entity_id = %s",
            (entity_type.value, entity_id),
        )
        return SyncProgress.model_validate(rows[0]) if rows else None

    def save_progress(self, progress: SyncProgress) -> SyncProgress:
        params = _plain(progress)
        updates = sql.SQL(", ").join(
            sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
            for c in PROGRESS_COLUMNS[2:]
        )
        query = sql.SQL(
            "INSERT INTO sync_progress ({cols}) VALUES ({vals}) "
            "ON CONFLICT (entity_type, entity_id) DO UPDATE SET {updates} RETURNING *"
        ).format(
            cols=sql.SQL(", ").join(map(sql.Identifier, PROGRESS_COLUMNS)),
            vals=sql.SQL(", ").join(sql.Placeholder(c) for c in PROGRESS_COLUMNS),
            updates=updates,
        )
        with _db_errors("save progress"), self.conn.transaction():
            row = self.conn.execute(query, params).fetchone()
        return SyncProgress.model_validate(row)

    def list_progress(self, entity_type: Optional[EntityType] = None) -> List[SyncProgress]:
        if entity_type is None:
            rows = self._rows("SELECT * FROM sync_progress")
        else:
            rows = self._rows(
                "SELECT * FROM sync_progress WHERE entity_type = %s", (entity_type.value,)
            )
        return [SyncProgress.model_validate(r) for r in rows]

    def snapshot(self) -> EntitySnapshot:
        with _db_errors("snapshot"), self.conn.transaction():
            # One transaction so the four reads see a consistent state.
            self.conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
            courts = self.conn.execute("SELECT * FROM courts").fetchall()
            judges = self.conn.execute("SELECT * FROM judges").fetchall()
            assignments = self.conn.execute("SELECT * FROM court_assignments").fetchall()
            cases = self.conn.execute("SELECT * FROM cases").fetchall()
        return EntitySnapshot(
            courts=[Court.model_validate(r) for r in courts],
            judges=[Judge.model_validate(r) for r in judges],
            assignments=[CourtAssignment.model_validate(r) for r in assignments],
            cases=[Decision.model_validate(r) for r in cases],
        )


# =============================================================================
# Reports
# =============================================================================


class PostgresReportStore:
    """Append-only ``validation_reports`` table."""

    def __init__(self, conn: psycopg.Connection):
        self.conn = conn

    def append(self, report: ValidationReport) -> None:
        with _db_errors("append report"), self.conn.transaction():
            self.conn.execute(
                """
                INSERT INTO validation_reports (
                    validation_id, run_kind, started_at, completed_at,
                    total_issues, critical_issues, body
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    report.validation_id,
                    report.run_kind,
                    report.started_at,
                    report.completed_at,
                    report.total_issues,
                    report.critical_issues,
                    Jsonb(report.model_dump(mode="json")),
                ),
            )

    def latest(self, limit: int = 1) -> List[ValidationReport]:
        with _db_errors("latest reports"):
            rows = self.conn.execute(
                "SELECT body FROM validation_reports ORDER BY completed_at DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [ValidationReport.model_validate(r["body"]) for r in rows]


# =============================================================================
# Upstream gates
# =============================================================================

# Times in these tables are epoch seconds from the workers' clocks.

TOKEN_TOTAL_SQL = """
INSERT INTO rate_limit_totals (upstream, {col}) VALUES (%s, 1)
ON CONFLICT (upstream) DO UPDATE SET {col} = rate_limit_totals.{col} + 1
"""

BREAKER_SAVE_SQL = """
UPDATE circuit_breakers
SET state = %(state)s,
    failure_count = %(failure_count)s,
    opened_at = %(opened_at)s,
    trial_started_at = %(trial_started_at)s,
    total_failures = %(total_failures)s,
    total_rejections = %(total_rejections)s,
    last_transition = %(last_transition)s,
    updated_at = now()
WHERE upstream = %(upstream)s
"""


class PostgresRateLimiter(RateLimiter):
    """
    Rate limiter whose spent tokens live in ``rate_limit_tokens``.

    Every process pointed at the same database draws from one budget. A take
    runs under a per-upstream ``pg_advisory_xact_lock`` so the count-then-insert
    can't race between processes; expired tokens are deleted on the way.
    """

    def __init__(self, conn: psycopg.Connection, clock: Callable[[], float] = time.time, **kwargs: Any):
        super().__init__(clock=clock, **kwargs)
        self.conn = conn

    def _bump(self, upstream: str, column: str) -> None:
        self.conn.execute(sql.SQL(TOKEN_TOTAL_SQL).format(col=sql.Identifier(column)), (upstream,))

    def _take(self, upstream: str, now: float) -> Tuple[float, int]:
        with self._lock, _db_errors("take rate limit token"), self.conn.transaction():
            self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"rate_limit:{upstream}",))
            self.conn.execute(
                "DELETE FROM rate_limit_tokens WHERE upstream = %s AND spent_at <= %s",
                (upstream, now - self.window_seconds),
            )
            row = self.conn.execute(
                "SELECT count(*) AS used, min(spent_at) AS oldest FROM rate_limit_tokens WHERE upstream = %s",
                (upstream,),
            ).fetchone()
            used = int(row["used"])
            if used >= self.capacity:
                return max(0.0, row["oldest"] + self.window_seconds - now), used
            self.conn.execute(
                "INSERT INTO rate_limit_tokens (upstream, spent_at) VALUES (%s, %s)",
                (upstream, now),
            )
            self._bump(upstream, "total_acquired")
            return 0.0, used + 1

    def _window(self, upstream: str, now: float) -> Tuple[int, Optional[float]]:
        with self._lock, _db_errors("read rate limit window"):
            row = self.conn.execute(
                """
                SELECT count(*) AS used, min(spent_at) AS oldest
                FROM rate_limit_tokens
                WHERE upstream = %s AND spent_at > %s
                """,
                (upstream, now - self.window_seconds),
            ).fetchone()
        return int(row["used"]), row["oldest"]

    def _count_rejection(self, upstream: str) -> None:
        with self._lock, _db_errors("count rate limit rejection"), self.conn.transaction():
            self._bump(upstream, "total_rejected")

    def _totals(self, upstream: str) -> Tuple[int, int]:
        with self._lock, _db_errors("read rate limit totals"):
            row = self.conn.execute(
                "SELECT total_acquired, total_rejected FROM rate_limit_totals WHERE upstream = %s",
                (upstream,),
            ).fetchone()
        if row is None:
            return 0, 0
        return int(row["total_acquired"]), int(row["total_rejected"])

    def _clear(self, upstream: Optional[str]) -> None:
        with self._lock, _db_errors("reset rate limit"), self.conn.transaction():
            if upstream is None:
                self.conn.execute("DELETE FROM rate_limit_tokens")
                self.conn.execute("DELETE FROM rate_limit_totals")
            else:
                self.conn.execute("DELETE FROM rate_limit_tokens WHERE upstream = %s", (upstream,))
                self.conn.execute("DELETE FROM rate_limit_totals WHERE upstream = %s", (upstream,))


def _breaker_record(row: Optional[Dict[str, Any]]) -> BreakerRecord:
    if row is None:
        return BreakerRecord()
    return BreakerRecord(
        state=BreakerState(row["state"]),
        failure_count=row["failure_count"],
        opened_at=row["opened_at"],
        trial_started_at=row["trial_started_at"],
        total_failures=int(row["total_failures"]),
        total_rejections=int(row["total_rejections"]),
        last_transition=row["last_transition"],
    )


class PostgresCircuitBreaker(CircuitBreaker):
    """Circuit breaker whose record is one ``circuit_breakers`` row, locked with FOR UPDATE."""

    def __init__(
        self,
        conn: psycopg.Connection,
        upstream: str = "courtlistener",
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ):
        super().__init__(upstream, clock=clock, **kwargs)
        self.conn = conn

    @contextmanager
    def _locked(self) -> Iterator[BreakerRecord]:
        with self._lock, _db_errors("circuit breaker"), self.conn.transaction():
            self.conn.execute(
                "INSERT INTO circuit_breakers (upstream) VALUES (%s) ON CONFLICT (upstream) DO NOTHING",
                (self.upstream,),
            )
            row = self.conn.execute(
                "SELECT * FROM circuit_breakers WHERE upstream = %s FOR UPDATE",
                (self.upstream,),
            ).fetchone()
            record = _breaker_record(row)
            before = replace(record)
            yield record
            if record != before:
                self.conn.execute(
                    BREAKER_SAVE_SQL,
                    {**asdict(record), "state": record.state.value, "upstream": self.upstream},
                )

    def _read(self) -> BreakerRecord:
        with self._lock, _db_errors("read circuit breaker"):
            row = self.conn.execute(
                "SELECT * FROM circuit_breakers WHERE upstream = %s", (self.upstream,)
            ).fetchone()
        return _breaker_record(row)
