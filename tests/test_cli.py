from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from jobgate import __version__
from jobgate.main import jobgate

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]

_JOB_ID = re.compile(r"job_id=(\S+)")


@pytest.fixture()
def cli_db(tmp_path: Path, isolated_env: pytest.MonkeyPatch) -> str:
    isolated_env.setenv("JOBGATE_POLL_INTERVAL_SECONDS", "0")
    return str(tmp_path / "cli.db")


def _invoke(*args: str):
    result = CliRunner().invoke(jobgate, list(args))
    return result


def _enqueue(db: str, key: str, *extra: str) -> str:
    result = _invoke(
        "jobs",
        "enqueue",
        "--db-path",
        db,
        "--handler",
        "echo",
        "--key",
        key,
        "--payload",
        '{"hello": "world"}',
        *extra,
    )
    assert result.exit_code == 0, result.output
    match = _JOB_ID.search(result.output)
    assert match is not None
    return match.group(1)


def test_enqueue_is_idempotent_by_key(cli_db: str) -> None:
    first = _invoke("jobs", "enqueue", "--db-path", cli_db, "--handler", "echo", "--key", "k1")
    second = _invoke("jobs", "enqueue", "--db-path", cli_db, "--handler", "echo", "--key", "k1")

    assert first.exit_code == 0, first.output
    assert "Job enqueued:" in first.output
    assert "queue=DEFAULT" in first.output
    assert "Job already exists:" in second.output
    assert _JOB_ID.search(first.output).group(1) == _JOB_ID.search(second.output).group(1)


def test_list_and_inspect_show_job(cli_db: str) -> None:
    job_id = _enqueue(cli_db, "inspect-me", "--queue", "low", "--priority", "5")

    listed = _invoke("jobs", "list", "--db-path", cli_db, "--queue", "LOW", "--state", "pending")
    inspected = _invoke("jobs", "inspect", "--db-path", cli_db, job_id)
    missing = _invoke("jobs", "inspect", "--db-path", cli_db, "no-such-job")

    assert "Jobs: 1" in listed.output
    assert job_id in listed.output
    assert f"Job: {job_id}" in inspected.output
    assert "Queue: LOW" in inspected.output
    assert "Priority: 5" in inspected.output
    assert "Attempts: 0/" in inspected.output
    assert "enqueued" in inspected.output
    assert "Job not found: no-such-job" in missing.output


def test_pause_resume_and_depth(cli_db: str) -> None:
    _enqueue(cli_db, "bulk-1", "--queue", "BULK")

    paused = _invoke("jobs", "pause", "--db-path", cli_db, "--reason", "maintenance", "BULK")
    depth_paused = _invoke("jobs", "depth", "--db-path", cli_db)
    resumed = _invoke("jobs", "resume", "--db-path", cli_db, "BULK")
    depth_resumed = _invoke("jobs", "depth", "--db-path", cli_db)

    assert "Queue paused: BULK" in paused.output
    bulk_line = next(line for line in depth_paused.output.splitlines() if "BULK" in line)
    assert "pending=1" in bulk_line
    assert "PAUSED" in bulk_line
    assert "Queue resumed: BULK" in resumed.output
    bulk_line = next(line for line in depth_resumed.output.splitlines() if "BULK" in line)
    assert "PAUSED" not in bulk_line


def test_worker_once_runs_builtin_handler(cli_db: str) -> None:
    job_id = _enqueue(cli_db, "echo-1")

    result = _invoke("worker", "--db-path", cli_db, "--once")
    inspected = _invoke("jobs", "inspect", "--db-path", cli_db, job_id)

    assert result.exit_code == 0, result.output
    assert "Worker summary: processed=1 succeeded=1" in result.output
    assert "State: done" in inspected.output


def test_requeue_of_live_job_is_rejected(cli_db: str) -> None:
    job_id = _enqueue(cli_db, "still-pending")

    result = _invoke("jobs", "requeue", "--db-path", cli_db, job_id)

    assert result.exit_code == 1


def test_limits_set_rule_then_check_until_denied(cli_db: str) -> None:
    updated = _invoke(
        "limits",
        "set-rule",
        "--db-path",
        cli_db,
        "--action",
        "vote",
        "--tier",
        "logged_in",
        "--limit",
        "1",
        "--window",
        "60",
        "--by",
        "ops",
    )
    check_args = (
        "limits",
        "check",
        "--db-path",
        cli_db,
        "--identity",
        "u:42",
        "--action",
        "vote",
        "--tier",
        "logged_in",
    )
    allowed = _invoke(*check_args)
    denied = _invoke(*check_args)
    violations = _invoke("limits", "violations", "--db-path", cli_db, "--identity", "u:42")
    rules = _invoke("limits", "rules", "--db-path", cli_db)

    assert "Rule updated: vote logged_in 1/60s" in updated.output
    assert allowed.output.startswith("Allowed:")
    assert "remaining=0/1" in allowed.output
    assert denied.output.startswith("Denied:")
    assert "Retry after:" in denied.output
    assert "Violations: 1" in violations.output
    assert "updated_by=ops" in rules.output


def test_limits_check_without_rule_is_allowed(cli_db: str) -> None:
    result = _invoke(
        "limits",
        "check",
        "--db-path",
        cli_db,
        "--identity",
        "ip:10.0.0.1",
        "--action",
        "unconfigured",
    )

    assert result.output.startswith("Allowed:")
    assert "No rule configured" in result.output


def test_budget_usage_status_and_override(cli_db: str) -> None:
    reported = _invoke(
        "budget",
        "report-usage",
        "--db-path",
        cli_db,
        "--units",
        "1000",
        "--cost-cents",
        "40000",
    )
    status = _invoke("budget", "status", "--db-path", cli_db)
    raised = _invoke(
        "budget",
        "override",
        "--db-path",
        cli_db,
        "--limit-cents",
        "100000",
        "--reason",
        "launch week",
        "--actor",
        "finance",
    )
    history = _invoke("budget", "history", "--db-path", cli_db)

    assert reported.exit_code == 0, reported.output
    assert "40000/50000 cents (80.0%)" in reported.output
    assert "Action: REDUCE" in status.output
    assert "Alerts sent: 75%" in status.output
    assert "Budget limit set to 100000 cents" in raised.output
    assert "Action: NORMAL" in raised.output
    assert "50000 -> 100000 cents by finance: launch week" in history.output


def test_report_usage_requires_cost_or_model(cli_db: str) -> None:
    result = _invoke("budget", "report-usage", "--db-path", cli_db, "--units", "10")

    assert result.exit_code == 1


def test_version_option() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output
