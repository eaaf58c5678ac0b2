"""CLI entrypoint for jobgate."""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import rich_click as click

from jobgate import __version__
from jobgate.controllers import (
    BudgetCommand,
    BudgetOverrideCommand,
    BudgetUsageCommand,
    EnqueueCommand,
    JobCommand,
    JobgateCliController,
    LimitCheckCommand,
    LimitRuleCommand,
    ListJobsCommand,
    QueueCommand,
    RulesCommand,
    ViolationsCommand,
    WorkerCommand,
)
from jobgate.queue.errors import JobNotFoundError, JobStateError
from jobgate.queue.models import JobQueue, JobState
from jobgate.ratelimit.models import Tier

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobgateCliController()

QUEUE_CHOICE = click.Choice([queue.value for queue in JobQueue], case_sensitive=False)
STATE_CHOICE = click.Choice([state.value for state in JobState], case_sensitive=False)
TIER_CHOICE = click.Choice([tier.value for tier in Tier], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="jobgate")
def jobgate() -> None:
    """Workload admission and scheduling engine."""


@jobgate.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", "queue", type=QUEUE_CHOICE, default="DEFAULT", show_default=True)
@click.option("--handler", "handler_type", required=True, help="Registered handler type.")
@click.option("--payload", default="{}", show_default=True, help="Opaque payload (UTF-8 text).")
@click.option("--key", "idempotency_key", required=True, help="Idempotency key.")
@click.option(
    "--run-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
    default=None,
    help="Earliest execution time, UTC.",
)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option("--priority", type=int, default=100, show_default=True, help="Lower runs first.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    queue: str,
    handler_type: str,
    payload: str,
    idempotency_key: str,
    run_at: datetime | None,
    max_attempts: int | None,
    priority: int,
) -> None:
    """Enqueue a job; an existing live job with the same key is returned instead."""

    _run(
        CONTROLLER.enqueue,
        EnqueueCommand(
            db_path=db_path,
            queue=queue,
            handler_type=handler_type,
            payload=payload,
            idempotency_key=idempotency_key,
            run_at=run_at,
            max_attempts=max_attempts,
            priority=priority,
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", type=QUEUE_CHOICE, default=None)
@click.option("--state", type=STATE_CHOICE, default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def jobs_list(db_path: Path | None, queue: str | None, state: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        CONTROLLER.list_jobs,
        ListJobsCommand(db_path=db_path, queue=queue, state=state, limit=limit),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job and its event history."""

    _run(CONTROLLER.inspect_job, JobCommand(db_path=db_path, job_id=job_id))


@jobs.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_requeue(db_path: Path | None, job_id: str) -> None:
    """Move a dead-lettered job back to pending with attempts reset."""

    _run(CONTROLLER.requeue, JobCommand(db_path=db_path, job_id=job_id))


@jobs.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_delete(db_path: Path | None, job_id: str) -> None:
    """Delete a pending or dead job."""

    _run(CONTROLLER.delete, JobCommand(db_path=db_path, job_id=job_id))


@jobs.command("dead-letter")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--queue", type=QUEUE_CHOICE, default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=100, show_default=True)
def jobs_dead_letter(db_path: Path | None, queue: str | None, limit: int) -> None:
    """List dead-lettered jobs."""

    _run(CONTROLLER.dead_letter, QueueCommand(db_path=db_path, queue=queue, limit=limit))


@jobs.command("depth")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_depth(db_path: Path | None) -> None:
    """Per-queue job counts."""

    _run(CONTROLLER.depth, QueueCommand(db_path=db_path, queue=None))


@jobs.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", default=None, help="Why the queue is paused.")
@click.argument("queue", type=QUEUE_CHOICE)
def jobs_pause(db_path: Path | None, reason: str | None, queue: str) -> None:
    """Stop new claims on a queue; leased jobs still finish."""

    _run(CONTROLLER.pause, QueueCommand(db_path=db_path, queue=queue, reason=reason))


@jobs.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("queue", type=QUEUE_CHOICE)
def jobs_resume(db_path: Path | None, queue: str) -> None:
    """Allow claims on a paused queue again."""

    _run(CONTROLLER.resume, QueueCommand(db_path=db_path, queue=queue))


@jobs.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_reclaim(db_path: Path | None) -> None:
    """Return jobs with expired leases to pending."""

    _run(CONTROLLER.reclaim, QueueCommand(db_path=db_path, queue=None))


@jobgate.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one job in-process, or run the worker pools.",
)
@click.option("--max-jobs", type=click.IntRange(min=1), default=None)
@click.option(
    "--handlers",
    "handler_factories",
    multiple=True,
    help="Handler factory `module:callable` that registers handlers. Can be repeated.",
)
@click.option(
    "--exit-when-idle/--keep-polling",
    default=True,
    show_default=True,
    help="Stop the pools once no job is ready.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    handler_factories: tuple[str, ...],
    exit_when_idle: bool,
) -> None:
    """Run queue workers."""

    _run(
        CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            handler_factories=handler_factories,
            exit_when_idle=exit_when_idle,
        ),
    )


@jobgate.group()
def limits() -> None:
    """Rate limit commands."""


@limits.command("check")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--identity", "identity_key", required=True, help="Identity key, e.g. u:42.")
@click.option("--action", "action_type", required=True)
@click.option("--tier", type=TIER_CHOICE, default="anonymous", show_default=True)
@click.option("--endpoint", default=None)
def limits_check(
    db_path: Path | None,
    identity_key: str,
    action_type: str,
    tier: str,
    endpoint: str | None,
) -> None:
    """Count one attempt and print the decision."""

    _run(
        CONTROLLER.check_limit,
        LimitCheckCommand(
            db_path=db_path,
            identity_key=identity_key,
            action_type=action_type,
            tier=tier,
            endpoint=endpoint,
        ),
    )


@limits.command("rules")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def limits_rules(db_path: Path | None) -> None:
    """List configured rate limit rules."""

    _run(CONTROLLER.list_rules, RulesCommand(db_path=db_path))


@limits.command("set-rule")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--action", "action_type", required=True)
@click.option("--tier", type=TIER_CHOICE, required=True)
@click.option("--limit", "limit_count", type=click.IntRange(min=1), required=True)
@click.option("--window", "window_seconds", type=click.IntRange(min=1), required=True)
@click.option("--by", "updated_by", default=None, help="Operator name for the audit trail.")
def limits_set_rule(  # noqa: PLR0913
    db_path: Path | None,
    action_type: str,
    tier: str,
    limit_count: int,
    window_seconds: int,
    updated_by: str | None,
) -> None:
    """Create or replace one rule."""

    _run(
        CONTROLLER.set_rule,
        LimitRuleCommand(
            db_path=db_path,
            action_type=action_type,
            tier=tier,
            limit_count=limit_count,
            window_seconds=window_seconds,
            updated_by=updated_by,
        ),
    )


@limits.command("violations")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--identity", "identity_key", default=None)
@click.option("--action", "action_type", default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def limits_violations(
    db_path: Path | None,
    identity_key: str | None,
    action_type: str | None,
    limit: int,
) -> None:
    """List recorded rate limit violations."""

    _run(
        CONTROLLER.violations,
        ViolationsCommand(
            db_path=db_path,
            identity_key=identity_key,
            action_type=action_type,
            limit=limit,
        ),
    )


@jobgate.group()
def budget() -> None:
    """AI budget commands."""


@budget.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None, help="Defaults to JOBGATE_BUDGET_DEFAULT_PROVIDER.")
def budget_status(db_path: Path | None, provider: str | None) -> None:
    """Show this month's spend and the resulting action."""

    _run(CONTROLLER.budget_status, BudgetCommand(db_path=db_path, provider=provider))


@budget.command("report-usage")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None)
@click.option("--units", type=click.IntRange(min=0), required=True, help="Units (input tokens).")
@click.option("--cost-cents", type=click.IntRange(min=0), default=None)
@click.option("--model", default=None, help="Price the units with JOBGATE_AI_PRICING.")
@click.option("--output-units", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--requests", type=click.IntRange(min=0), default=1, show_default=True)
def budget_report_usage(  # noqa: PLR0913
    db_path: Path | None,
    provider: str | None,
    units: int,
    cost_cents: int | None,
    model: str | None,
    output_units: int,
    requests: int,
) -> None:
    """Add usage to this month's counter."""

    _run(
        CONTROLLER.report_usage,
        BudgetUsageCommand(
            db_path=db_path,
            provider=provider,
            units=units,
            cost_cents=cost_cents,
            model=model,
            output_units=output_units,
            requests=requests,
        ),
    )


@budget.command("override")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None)
@click.option("--limit-cents", type=click.IntRange(min=0), required=True)
@click.option("--reason", required=True)
@click.option("--actor", default=None)
def budget_override(
    db_path: Path | None,
    provider: str | None,
    limit_cents: int,
    reason: str,
    actor: str | None,
) -> None:
    """Set this month's limit; takes effect on the next check."""

    _run(
        CONTROLLER.override,
        BudgetOverrideCommand(
            db_path=db_path,
            provider=provider,
            limit_cents=limit_cents,
            reason=reason,
            actor=actor,
        ),
    )


@budget.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None)
@click.option("--months", type=click.IntRange(min=1, max=120), default=12, show_default=True)
def budget_history(db_path: Path | None, provider: str | None, months: int) -> None:
    """Monthly counters and overrides."""

    _run(
        CONTROLLER.history,
        BudgetCommand(db_path=db_path, provider=provider, months=months),
    )


def _run(handler: Callable[[Any], list[str]], command: object) -> None:
    try:
        lines = handler(command)
    except (ValueError, JobStateError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobgate()
