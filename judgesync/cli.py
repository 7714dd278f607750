"""
JudgeSync - Command Line

Usage:
    judgesync init-db
    judgesync enqueue judge 1213 --priority 5
    judgesync enqueue full --payload '{"jurisdiction": "CA"}'
    judgesync work --max-jobs 100
    judgesync cancel 42
    judgesync validate --fix --text
    judgesync status --json
    judgesync maintain
    judgesync --backend memory work --once

Exit codes:
    0  success
    1  operational failure (store, upstream, invalid job)
    2  usage error
"""

from __future__ import annotations

import functools
import json
import logging
import signal
from typing import Any, Callable, Dict, Optional, TypeVar

import click
from dotenv import load_dotenv
from pydantic import ValidationError

from judgesync.admin import data_quality_overview, queue_overview, sync_progress_overview, upstream_status
from judgesync.config import get_settings
from judgesync.core.error_taxonomy import JudgeSyncError, log_classified_error
from judgesync.core.logging import configure_logging
from judgesync.core.models import EntityType, SyncOperation
from judgesync.queue.worker import SyncWorker
from judgesync.quality.reports import render_text_report
from judgesync.runtime import Runtime, build_runtime
from judgesync.storage.schema import apply_schema

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _runtime(ctx: click.Context) -> Runtime:
    """Build the runtime on first use; commands that never touch it stay cheap."""
    obj = ctx.ensure_object(dict)
    runtime = obj.get("runtime")
    if runtime is None:
        runtime = build_runtime(obj["settings"], backend=obj["backend"], worker_type=ctx.info_name or "cli")
        obj["runtime"] = runtime
        ctx.call_on_close(runtime.close)
    return runtime


def _operational(func: F) -> F:
    """Turn typed errors into a one-line message and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except JudgeSyncError as e:
            log_classified_error(e, {"command": func.__name__})
            raise click.ClickException(e.describe()) from e

    return wrapper  # type: ignore[return-value]


def _echo_json(data: Dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# =============================================================================
# Group
# =============================================================================


@click.group()
@click.option(
    "--backend",
    type=click.Choice(["postgres", "memory"]),
    default="postgres",
    show_default=True,
    envvar="JUDGESYNC_BACKEND",
    help="Storage backend. 'memory' is a dry run that persists nothing.",
)
@click.pass_context
def main(ctx: click.Context, backend: str) -> None:
    """Sync courts, judges and decisions from CourtListener and audit the result."""
    load_dotenv()
    try:
        settings = get_settings()
    except ValidationError as e:
        raise click.ClickException(f"invalid configuration: {e.error_count()} error(s)\n{e}") from e
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    obj = ctx.ensure_object(dict)
    obj.setdefault("settings", settings)
    obj.setdefault("backend", backend)


# =============================================================================
# Commands
# =============================================================================


@main.command("init-db")
@click.pass_context
@_operational
def init_db(ctx: click.Context) -> None:
    """Create tables and indexes (idempotent)."""
    runtime = _runtime(ctx)
    if runtime.conn is None:
        click.echo("memory backend: nothing to initialise")
        return
    apply_schema(runtime.conn)
    click.echo("schema applied")


@main.command()
@click.argument("entity_type", type=click.Choice([t.value for t in EntityType]))
@click.option("--external-id", default=None, help="Upstream id; omit for discovery jobs.")
@click.option("--priority", default=0, show_default=True, type=int, help="Higher runs first.")
@click.option(
    "--operation",
    type=click.Choice([op.value for op in SyncOperation]),
    default=SyncOperation.UPDATE.value,
    show_default=True,
)
@click.option("--payload", "payload_json", default=None, help="Job payload as a JSON object.")
@click.option("--no-dedupe", is_flag=True, help="Insert even if the same job is already active.")
@click.pass_context
@_operational
def enqueue(
    ctx: click.Context,
    entity_type: str,
    external_id: Optional[str],
    priority: int,
    operation: str,
    payload_json: Optional[str],
    no_dedupe: bool,
) -> None:
    """Add a sync job to the queue."""
    payload = None
    if payload_json:
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--payload") from e
        if not isinstance(payload, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--payload")

    job = _runtime(ctx).queue.enqueue(
        entity_type,
        external_id,
        operation=operation,
        priority=priority,
        payload=payload,
        dedupe=not no_dedupe,
    )
    click.echo(f"job {job.id} {job.status.value} ({job.entity_type.value}, priority {job.priority})")


@main.command()
@click.option("--once", is_flag=True, help="Process at most one job and exit.")
@click.option("--max-jobs", default=None, type=click.IntRange(min=1), help="Stop after N jobs.")
@click.option("--until-idle", is_flag=True, help="Exit when no job is due instead of polling.")
@click.option("--worker-id", default=None, help="Claim owner recorded on jobs.")
@click.pass_context
@_operational
def work(
    ctx: click.Context,
    once: bool,
    max_jobs: Optional[int],
    until_idle: bool,
    worker_id: Optional[str],
) -> None:
    """Claim and process jobs."""
    runtime = _runtime(ctx)
    worker = SyncWorker(
        runtime.queue,
        runtime.pipelines,
        worker_id=worker_id,
        poll_interval=runtime.settings.queue_poll_interval_seconds,
    )

    if once:
        outcome = worker.run_once()
        click.echo(f"{worker.worker_id}: {outcome.value if outcome else 'no job due'}")
        return

    def _handle_shutdown(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, finishing current job")
        worker.stop()

    previous = {sig: signal.signal(sig, _handle_shutdown) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        stats = worker.run(max_jobs=max_jobs, stop_when_idle=until_idle)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    click.echo(
        f"{worker.worker_id}: processed {stats.processed} "
        f"(completed {stats.completed}, retrying {stats.retried}, "
        f"failed {stats.failed}, cancelled {stats.cancelled})"
    )


@main.command()
@click.argument("job_id", type=int)
@click.pass_context
@_operational
def cancel(ctx: click.Context, job_id: int) -> None:
    """Cancel a pending or running job."""
    if not _runtime(ctx).queue.cancel(job_id):
        raise click.ClickException(f"job {job_id} is not pending or running")
    click.echo(f"job {job_id} cancelled")


@main.command()
@click.option("--quick", is_flag=True, help="Orphan, duplicate and missing-field checks only.")
@click.option("--fix", is_flag=True, help="Apply auto-fixable repairs after validating.")
@click.option("--text", "as_text", is_flag=True, help="Print the full text report.")
@click.pass_context
@_operational
def validate(ctx: click.Context, quick: bool, fix: bool, as_text: bool) -> None:
    """Run data quality validation."""
    runtime = _runtime(ctx)
    report = runtime.validator.run_quick_validation() if quick else runtime.validator.run_full_validation()

    if as_text:
        click.echo(render_text_report(report))
    else:
        click.echo(report.summary)
        click.echo(
            f"{report.total_issues} issue(s): {report.critical_issues} critical, "
            f"{report.high_issues} high, {report.medium_issues} medium, {report.low_issues} low"
        )

    if fix:
        results = runtime.fixer.fix_issues(report.issues)
        fixed = sum(1 for r in results if r.success)
        click.echo(f"auto-fix: {fixed} applied, {len(results) - fixed} failed")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of text.")
@click.pass_context
@_operational
def status(ctx: click.Context, as_json: bool) -> None:
    """Queue, upstream, sync progress and data quality overview."""
    runtime = _runtime(ctx)
    overview = {
        "queue": queue_overview(runtime.queue),
        "upstream": upstream_status(runtime.limiter, runtime.breaker),
        "sync_progress": sync_progress_overview(runtime.entity_store),
        "data_quality": data_quality_overview(runtime.report_store, runtime.settings.health_score_window),
    }
    if as_json:
        _echo_json(overview)
        return

    queue = overview["queue"]
    upstream = overview["upstream"]
    progress = overview["sync_progress"]
    quality = overview["data_quality"]
    click.echo(
        f"queue: {queue['pending']} pending, {queue['running']} running, "
        f"{queue['completed']} completed, {queue['failed']} failed, {queue['cancelled']} cancelled"
    )
    click.echo(
        f"upstream: {upstream['upstream']} {upstream['utilization_percent']}% used, "
        f"{upstream['remaining']} remaining, breaker {upstream['breaker_state']}"
    )
    click.echo(
        f"sync progress: {progress['total']} tracked, {progress['analytics_ready']} analytics-ready, "
        f"{progress['with_errors']} with errors"
    )
    click.echo(f"data quality: health {quality['health_score']}")
    if quality["summary"]:
        click.echo(f"  {quality['summary']}")
    for message in queue["messages"] + quality["messages"]:
        click.echo(f"  ! {message}")


@main.command()
@click.pass_context
@_operational
def maintain(ctx: click.Context) -> None:
    """Recover stale claims and purge old finished jobs."""
    runtime = _runtime(ctx)
    recovered = runtime.queue.recover_stale(runtime.settings.queue_lease_seconds)
    purged = runtime.queue.purge(runtime.settings.queue_retention_days)
    click.echo(f"recovered {recovered} stale job(s), purged {purged} finished job(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
