"""
JudgeSync - Database Schema

DDL for every table judgesync reads or writes. Idempotent; applied by
``judgesync init-db``.
"""

from __future__ import annotations

import logging

import psycopg

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS sync_queue (
    id                  bigserial PRIMARY KEY,
    entity_type         text NOT NULL
        CHECK (entity_type IN ('court', 'judge', 'decision', 'cleanup', 'full')),
    entity_external_id  text,
    operation           text NOT NULL DEFAULT 'update'
        CHECK (operation IN ('create', 'update')),
    priority            integer NOT NULL DEFAULT 0,
    status              text NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
    attempt_count       integer NOT NULL DEFAULT 0,
    max_attempts        integer NOT NULL DEFAULT 5,
    scheduled_for       timestamptz NOT NULL DEFAULT now(),
    claimed_by          text,
    claimed_at          timestamptz,
    payload             jsonb NOT NULL DEFAULT '{}'::jsonb,
    last_error          text,
    created_at          timestamptz NOT NULL DEFAULT now(),
    updated_at          timestamptz NOT NULL DEFAULT now(),
    completed_at        timestamptz
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_claim
    ON sync_queue (status, priority DESC, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity
    ON sync_queue (entity_type, entity_external_id)
    WHERE status IN ('pending', 'running');

CREATE TABLE IF NOT EXISTS courts (
    id              uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    external_id     text NOT NULL UNIQUE,
    name            text NOT NULL,
    slug            text NOT NULL,
    jurisdiction    text,
    court_type      text NOT NULL DEFAULT 'state' CHECK (court_type IN ('federal', 'state')),
    url             text,
    created_at      timestamptz NOT NULL DEFAULT now(),
    updated_at      timestamptz NOT NULL DEFAULT now(),
    last_synced_at  timestamptz
);

CREATE TABLE IF NOT EXISTS judges (
    id              uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    external_id     text NOT NULL UNIQUE,
    name            text NOT NULL,
    slug            text NOT NULL,
    jurisdiction    text,
    court_id        uuid REFERENCES courts(id) ON DELETE SET NULL,
    appointed_date  date,
    total_cases     integer NOT NULL DEFAULT 0,
    education       jsonb NOT NULL DEFAULT '[]'::jsonb,
    political_affiliation jsonb NOT NULL DEFAULT '[]'::jsonb,
    created_at      timestamptz NOT NULL DEFAULT now(),
    updated_at      timestamptz NOT NULL DEFAULT now(),
    last_synced_at  timestamptz
);

-- No foreign keys: the validator reports dangling references instead.
CREATE TABLE IF NOT EXISTS court_assignments (
    id               uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    judge_id         uuid NOT NULL,
    court_id         uuid NOT NULL,
    assignment_type  text NOT NULL
        CHECK (assignment_type IN ('primary', 'visiting', 'temporary', 'retired')),
    start_date       date NOT NULL,
    end_date         date,
    position_title   text,
    UNIQUE (judge_id, court_id, start_date)
);

CREATE TABLE IF NOT EXISTS cases (
    id              uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    external_id     text NOT NULL UNIQUE,
    case_name       text NOT NULL,
    docket_number   text,
    judge_id        uuid,
    court_id        uuid,
    decision_date   date,
    outcome         text,
    source          text NOT NULL DEFAULT 'opinion' CHECK (source IN ('opinion', 'docket')),
    jurisdiction    text,
    created_at      timestamptz NOT NULL DEFAULT now(),
    updated_at      timestamptz NOT NULL DEFAULT now(),
    last_synced_at  timestamptz
);

CREATE INDEX IF NOT EXISTS idx_cases_judge ON cases (judge_id);

CREATE TABLE IF NOT EXISTS sync_progress (
    entity_type         text NOT NULL,
    entity_id           uuid NOT NULL,
    phase               text NOT NULL DEFAULT 'discovery',
    has_positions       boolean NOT NULL DEFAULT false,
    has_details         boolean NOT NULL DEFAULT false,
    opinions_count      integer NOT NULL DEFAULT 0,
    dockets_count       integer NOT NULL DEFAULT 0,
    total_cases_count   integer NOT NULL DEFAULT 0,
    is_analytics_ready  boolean NOT NULL DEFAULT false,
    error_count         integer NOT NULL DEFAULT 0,
    last_error          text,
    last_error_at       timestamptz,
    last_synced_at      timestamptz,
    updated_at          timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (entity_type, entity_id)
);

CREATE TABLE IF NOT EXISTS validation_reports (
    validation_id   text PRIMARY KEY,
    run_kind        text NOT NULL,
    started_at      timestamptz NOT NULL,
    completed_at    timestamptz NOT NULL,
    total_issues    integer NOT NULL,
    critical_issues integer NOT NULL,
    body            jsonb NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_validation_reports_recent
    ON validation_reports (completed_at DESC);

-- Databases created before judges carried biography.
ALTER TABLE judges ADD COLUMN IF NOT EXISTS education jsonb NOT NULL DEFAULT '[]'::jsonb;
ALTER TABLE judges ADD COLUMN IF NOT EXISTS political_affiliation jsonb NOT NULL DEFAULT '[]'::jsonb;

-- Upstream gates shared by every worker process. Times are epoch seconds.
CREATE TABLE IF NOT EXISTS rate_limit_tokens (
    id              bigserial PRIMARY KEY,
    upstream        text NOT NULL,
    spent_at        double precision NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_tokens_window
    ON rate_limit_tokens (upstream, spent_at);

CREATE TABLE IF NOT EXISTS rate_limit_totals (
    upstream        text PRIMARY KEY,
    total_acquired  bigint NOT NULL DEFAULT 0,
    total_rejected  bigint NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS circuit_breakers (
    upstream          text PRIMARY KEY,
    state             text NOT NULL DEFAULT 'closed'
        CHECK (state IN ('closed', 'open', 'half_open')),
    failure_count     integer NOT NULL DEFAULT 0,
    opened_at         double precision,
    trial_started_at  double precision,
    total_failures    bigint NOT NULL DEFAULT 0,
    total_rejections  bigint NOT NULL DEFAULT 0,
    last_transition   text,
    updated_at        timestamptz NOT NULL DEFAULT now()
);
"""


def apply_schema(conn: psycopg.Connection) -> None:
    """Create all tables and indexes if they do not exist."""
    with conn.transaction():
        conn.execute(SCHEMA_SQL)
    logger.info("Schema applied")
