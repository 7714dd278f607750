"""Command line: argument handling, output and exit codes against the memory backend."""

from __future__ import annotations

import json

import httpx
import pytest
from click.testing import CliRunner

from judgesync import cli
from judgesync.config import Settings
from judgesync.core.models import JobStatus
from judgesync.runtime import build_runtime
from tests.helpers import BASE_URL, FakeCourtListener

FIRST_CIRCUIT = {
    "id": "ca1",
    "full_name": "Court of Appeals for the First Circuit",
    "jurisdiction": "F",
    "url": "http://www.ca1.uscourts.gov/",
}


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch):
    # CliRunner swaps the std streams per invocation; leave the root logger and env alone
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli, "load_dotenv", lambda: False)


@pytest.fixture
def runtime():
    upstream = FakeCourtListener({"courts/ca1/": FIRST_CIRCUIT})
    rt = build_runtime(
        Settings(courtlistener_base_url=BASE_URL),
        backend="memory",
        transport=httpx.MockTransport(upstream),
    )
    yield rt
    rt.close()


@pytest.fixture
def invoke(runtime):
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(
            cli.main,
            list(args),
            obj={"runtime": runtime, "settings": runtime.settings, "backend": "memory"},
        )

    return _invoke


class TestEnqueue:
    def test_enqueue_prints_the_job(self, invoke, runtime):
        result = invoke("enqueue", "judge", "--external-id", "1213", "--priority", "5")

        assert result.exit_code == 0
        assert result.output.strip() == "job 1 pending (judge, priority 5)"
        assert runtime.queue.get(1).entity_external_id == "1213"

    def test_duplicate_returns_active_job(self, invoke):
        invoke("enqueue", "court", "--external-id", "ca1")
        result = invoke("enqueue", "court", "--external-id", "ca1")

        assert "job 1 pending" in result.output

    def test_no_dedupe_inserts_again(self, invoke):
        invoke("enqueue", "court", "--external-id", "ca1")
        result = invoke("enqueue", "court", "--external-id", "ca1", "--no-dedupe")

        assert "job 2 pending" in result.output

    def test_payload_is_validated(self, invoke, runtime):
        result = invoke("enqueue", "full", "--payload", '{"jurisdiction": "CA"}')

        assert result.exit_code == 0
        assert runtime.queue.get(1).payload["jurisdiction"] == "CA"

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
    def test_bad_payload_is_a_usage_error(self, invoke, payload):
        result = invoke("enqueue", "court", "--payload", payload)

        assert result.exit_code == 2
        assert "--payload" in result.output

    def test_payload_rejected_by_model_is_operational(self, invoke):
        result = invoke("enqueue", "court", "--payload", '{"unexpected": 1}')

        assert result.exit_code == 1
        assert "JSE-" in result.output

    def test_unknown_entity_type(self, invoke):
        result = invoke("enqueue", "planet")

        assert result.exit_code == 2


class TestWork:
    def test_once_with_empty_queue(self, invoke):
        result = invoke("work", "--once", "--worker-id", "w1")

        assert result.exit_code == 0
        assert result.output.strip() == "w1: no job due"

    def test_once_processes_one_job(self, invoke, runtime):
        invoke("enqueue", "court", "--external-id", "ca1")

        result = invoke("work", "--once", "--worker-id", "w1")

        assert result.output.splitlines()[-1] == "w1: completed"
        assert runtime.entity_store.get_court_by_external_id("ca1") is not None

    def test_until_idle_summarises(self, invoke, runtime):
        invoke("enqueue", "court", "--external-id", "ca1")
        invoke("enqueue", "court", "--external-id", "gone")

        result = invoke("work", "--until-idle", "--worker-id", "w1")

        assert result.exit_code == 0
        assert result.output.splitlines()[-1] == "w1: processed 2 (completed 1, retrying 0, failed 1, cancelled 0)"
        assert runtime.queue.get(2).status == JobStatus.FAILED


class TestCancel:
    def test_cancel_pending_job(self, invoke, runtime):
        invoke("enqueue", "court", "--external-id", "ca1")

        result = invoke("cancel", "1")

        assert result.exit_code == 0
        assert result.output.strip() == "job 1 cancelled"
        assert runtime.queue.get(1).status == JobStatus.CANCELLED

    def test_cancel_unknown_job(self, invoke):
        result = invoke("cancel", "99")

        assert result.exit_code == 1
        assert "job 99 is not pending or running" in result.output


class TestValidate:
    def test_summary_output(self, invoke):
        result = invoke("validate")

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith("HEALTHY")
        assert lines[1] == "0 issue(s): 0 critical, 0 high, 0 medium, 0 low"

    def test_text_report_and_fix(self, invoke):
        result = invoke("validate", "--quick", "--text", "--fix")

        assert result.exit_code == 0
        assert "DATA QUALITY VALIDATION REPORT" in result.output
        assert "Run: quick" in result.output
        assert "auto-fix: 0 applied, 0 failed" in result.output


class TestStatus:
    def test_json_overview(self, invoke):
        invoke("enqueue", "court", "--external-id", "ca1")
        invoke("validate")

        result = invoke("status", "--json")

        assert result.exit_code == 0
        overview = json.loads(result.output)
        assert set(overview) == {"queue", "upstream", "sync_progress", "data_quality"}
        assert overview["queue"]["pending"] == 1
        assert overview["queue"]["messages"] == ["1 job pending"]
        assert overview["upstream"]["breaker_state"] == "closed"
        assert overview["data_quality"]["validation_id"].startswith("val_")

    def test_text_overview(self, invoke):
        result = invoke("status")

        assert result.exit_code == 0
        assert "queue: 0 pending, 0 running, 0 completed, 0 failed, 0 cancelled" in result.output
        assert "data quality: health 100.0" in result.output


class TestMaintenanceCommands:
    def test_maintain(self, invoke):
        result = invoke("maintain")

        assert result.exit_code == 0
        assert result.output.strip() == "recovered 0 stale job(s), purged 0 finished job(s)"

    def test_init_db_on_memory_backend(self, invoke):
        result = invoke("init-db")

        assert result.output.strip() == "memory backend: nothing to initialise"


class TestConfigurationErrors:
    def test_postgres_without_dsn(self):
        result = CliRunner().invoke(cli.main, ["init-db"])

        assert result.exit_code == 1
        assert "JSE-CONFIG-001" in result.output

    def test_invalid_setting(self, monkeypatch):
        monkeypatch.setenv("JUDGESYNC_MAX_RETRIES", "99")

        result = CliRunner().invoke(cli.main, ["status"])

        assert result.exit_code == 1
        assert "invalid configuration" in result.output
