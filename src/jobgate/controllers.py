"""Controllers for jobgate CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from jobgate.budget.models import BudgetState
from jobgate.config import Settings
from jobgate.queue.builtin_handlers import register_builtin_handlers
from jobgate.queue.handlers import HandlerRegistry
from jobgate.queue.models import SHARED_QUEUE_ORDER, JobQueue, JobState, JobView
from jobgate.queue.worker import JobWorker, WorkerRunSummary
from jobgate.ratelimit.models import Tier
from jobgate.services import Runtime, build_runtime

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    queue: str
    handler_type: str
    payload: str
    idempotency_key: str
    run_at: datetime | None = None
    max_attempts: int | None = None
    priority: int = 100


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    queue: str | None
    state: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueCommand:
    """CLI input for queue gate and dead-letter operations."""

    db_path: Path | None
    queue: str | None
    reason: str | None = None
    limit: int = 100


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    handler_factories: tuple[str, ...] = ()
    exit_when_idle: bool = True


@dataclass(slots=True)
class LimitCheckCommand:
    db_path: Path | None
    identity_key: str
    action_type: str
    tier: str
    endpoint: str | None = None


@dataclass(slots=True)
class RulesCommand:
    db_path: Path | None


@dataclass(slots=True)
class LimitRuleCommand:
    """CLI input for rate limit rule updates."""

    db_path: Path | None
    action_type: str
    tier: str
    limit_count: int
    window_seconds: int
    updated_by: str | None


@dataclass(slots=True)
class ViolationsCommand:
    db_path: Path | None
    identity_key: str | None
    action_type: str | None
    limit: int


@dataclass(slots=True)
class BudgetCommand:
    """CLI input for read-only budget reports."""

    db_path: Path | None
    provider: str | None
    months: int = 12


@dataclass(slots=True)
class BudgetUsageCommand:
    db_path: Path | None
    provider: str | None
    units: int
    cost_cents: int | None
    model: str | None
    output_units: int = 0
    requests: int = 1


@dataclass(slots=True)
class BudgetOverrideCommand:
    db_path: Path | None
    provider: str | None
    limit_cents: int
    reason: str
    actor: str | None


class JobgateCliController:
    """CLI use-cases over the job store, rate limiter and budget gate."""

    # -- jobs ------------------------------------------------------------------

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            result = runtime.store.enqueue(
                JobQueue.parse(command.queue),
                command.handler_type,
                command.payload,
                command.idempotency_key,
                run_at=command.run_at,
                max_attempts=command.max_attempts,
                priority=command.priority,
            )
        job = result.job
        verb = "Job enqueued" if result.created else "Job already exists"
        return [
            f"{verb}: job_id={job.job_id} queue={job.queue.value} "
            f"handler={job.handler_type} state={job.state.value}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        queue = JobQueue.parse(command.queue) if command.queue else None
        state = _parse_state(command.state)
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.store.list_jobs(queue=queue, state=state, limit=command.limit)
        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_job_line(job) for job in jobs)
        return lines

    def inspect_job(self, command: JobCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            details = runtime.store.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Queue: {job.queue.value}",
            f"Handler: {job.handler_type}",
            f"State: {job.state.value}",
            f"Idempotency key: {job.idempotency_key}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Run at: {job.run_at.isoformat()}",
            f"Lease: {job.lease_owner or '-'} until "
            f"{job.lease_expires_at.isoformat() if job.lease_expires_at else '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.last_error or '-'}",
            f"Payload bytes: {len(job.payload)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'}",
            )
        return lines

    def requeue(self, command: JobCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            job = runtime.admin.requeue(command.job_id)
        return [f"Job re-queued: {job.job_id} run_at={job.run_at.isoformat()}"]

    def delete(self, command: JobCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.admin.delete_job(command.job_id)
        return [f"Job deleted: {command.job_id}"]

    def dead_letter(self, command: QueueCommand) -> list[str]:
        queue = JobQueue.parse(command.queue) if command.queue else None
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.admin.list_dead_letter(queue, limit=command.limit)
        lines = [f"Dead-letter jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"{_job_line(job)} "
                f"failure_class={job.failure_class.value if job.failure_class else '-'} "
                f"error={job.last_error or '-'}",
            )
        return lines

    def depth(self, command: QueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            depth = runtime.admin.queue_depth()
        lines = ["Queue depth:"]
        for view in depth:
            lines.append(
                f"  {view.queue.value:<10} pending={view.pending} ready={view.ready} "
                f"leased={view.leased} done={view.done} dead={view.dead}"
                f"{' PAUSED' if view.paused else ''}",
            )
        return lines

    def pause(self, command: QueueCommand) -> list[str]:
        queue = JobQueue.parse(command.queue or "")
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.admin.pause_queue(queue, command.reason)
        return [f"Queue paused: {queue.value}"]

    def resume(self, command: QueueCommand) -> list[str]:
        queue = JobQueue.parse(command.queue or "")
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.admin.resume_queue(queue)
        return [f"Queue resumed: {queue.value}"]

    def reclaim(self, command: QueueCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            reclaimed = runtime.admin.reclaim_expired_leases()
        return [f"Reclaimed expired leases: {reclaimed}"]

    # -- worker ----------------------------------------------------------------

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
        registry = HandlerRegistry()
        register_builtin_handlers(registry)
        for target in command.handler_factories:
            registry.load_factory(target)

        with _runtime(settings, registry=registry) as runtime:
            if command.once:
                worker = JobWorker(
                    store=runtime.store,
                    registry=registry,
                    worker_id=settings.dispatcher.worker_id,
                    claim_order=(*SHARED_QUEUE_ORDER, JobQueue.SCREENSHOT),
                    lease_seconds=settings.dispatcher.lease_seconds,
                    poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
                    reclaim_interval_seconds=settings.dispatcher.reclaim_interval_seconds,
                    budget=runtime.budget,
                    rate_limiter=runtime.rate_limiter,
                )
                summary = worker.run_once()
            else:
                summary = runtime.dispatcher().run(
                    max_jobs=command.max_jobs,
                    idle_exit=command.exit_when_idle,
                )
        return [_summary_line(summary)]

    # -- rate limits -----------------------------------------------------------

    def check_limit(self, command: LimitCheckCommand) -> list[str]:
        tier = Tier(command.tier.strip().lower())
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            decision = runtime.rate_limiter.check_limit(
                command.identity_key,
                command.action_type,
                tier,
                endpoint=command.endpoint,
            )
        lines = [
            f"{'Allowed' if decision.allowed else 'Denied'}: "
            f"identity={command.identity_key} action={command.action_type} tier={tier.value} "
            f"remaining={decision.remaining}/{decision.limit_count} "
            f"window={decision.window_seconds}s",
        ]
        if not decision.rule_found:
            lines.append("No rule configured for this action and tier.")
        if decision.retry_after_seconds is not None:
            lines.append(f"Retry after: {decision.retry_after_seconds}s")
        return lines

    def list_rules(self, command: RulesCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            rules = runtime.rate_limiter.list_rules()
        lines = [f"Rate limit rules: {len(rules)}"]
        for rule in rules:
            lines.append(
                f"  {rule.action_type:<20} {rule.tier.value:<10} "
                f"{rule.limit_count}/{rule.window_seconds}s "
                f"updated_by={rule.updated_by or '-'}",
            )
        return lines

    def set_rule(self, command: LimitRuleCommand) -> list[str]:
        tier = Tier(command.tier.strip().lower())
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            rule = runtime.rate_limiter.update_rule(
                action_type=command.action_type,
                tier=tier,
                limit_count=command.limit_count,
                window_seconds=command.window_seconds,
                updated_by=command.updated_by,
            )
        return [
            f"Rule updated: {rule.action_type} {rule.tier.value} "
            f"{rule.limit_count}/{rule.window_seconds}s",
        ]

    def violations(self, command: ViolationsCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            rows = runtime.rate_limiter.list_violations(
                identity_key=command.identity_key,
                action_type=command.action_type,
                limit=command.limit,
            )
        lines = [f"Violations: {len(rows)}"]
        for row in rows:
            lines.append(
                f"  {row.violated_at.isoformat()} {row.identity_key} {row.action_type} "
                f"tier={row.tier.value} endpoint={row.endpoint or '-'} "
                f"count={row.violation_count}",
            )
        return lines

    # -- budget ----------------------------------------------------------------

    def budget_status(self, command: BudgetCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            state = runtime.admin.budget_state(command.provider)
            alerts = runtime.budget.alerts(state.provider)
        lines = _budget_lines(state)
        current = [alert for alert in alerts if alert.month == state.month]
        if current:
            lines.append(
                "Alerts sent: " + ", ".join(f"{alert.threshold_percent}%" for alert in current),
            )
        return lines

    def report_usage(self, command: BudgetUsageCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            provider = command.provider or runtime.budget.default_provider
            if command.cost_cents is None:
                if command.model is None:
                    raise ValueError("Pass either --cost-cents or --model to price the usage.")
                state = runtime.budget.report_tokens(
                    provider,
                    command.model,
                    input_tokens=command.units,
                    output_tokens=command.output_units,
                )
            else:
                state = runtime.budget.report_usage(
                    provider,
                    command.units,
                    command.cost_cents,
                    requests=command.requests,
                )
        return _budget_lines(state)

    def override(self, command: BudgetOverrideCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            provider = command.provider or runtime.budget.default_provider
            state = runtime.budget.raise_limit(
                provider,
                command.limit_cents,
                command.reason,
                actor=command.actor,
            )
        return [f"Budget limit set to {state.budget_limit_cents} cents", *_budget_lines(state)]

    def history(self, command: BudgetCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            states = runtime.budget.history(command.provider, months=command.months)
            overrides = runtime.budget.overrides(command.provider)
        lines = [f"Budget history: {len(states)} month(s)"]
        for state in states:
            lines.append(
                f"  {state.month.isoformat()} {state.provider} "
                f"{state.estimated_cost_cents}/{state.budget_limit_cents} cents "
                f"({state.percent_used:.1f}%) requests={state.total_requests} "
                f"units={state.total_units_consumed} action={state.action.value}",
            )
        for override in overrides:
            lines.append(
                f"  override {override.created_at.isoformat()} "
                f"{override.previous_limit_cents} -> {override.new_limit_cents} cents "
                f"by {override.actor or '-'}: {override.reason}",
            )
        return lines


def _parse_state(value: str | None) -> JobState | None:
    if value is None:
        return None
    try:
        return JobState(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in JobState)
        raise ValueError(f"Unknown job state {value!r}; expected one of: {allowed}") from error


def _job_line(job: JobView) -> str:
    return (
        f"  {job.job_id} queue={job.queue.value} handler={job.handler_type} "
        f"state={job.state.value} attempts={job.attempts}/{job.max_attempts} "
        f"run_at={job.run_at.isoformat()}"
    )


def _budget_lines(state: BudgetState) -> list[str]:
    return [
        f"Budget {state.provider} {state.month.isoformat()}: "
        f"{state.estimated_cost_cents}/{state.budget_limit_cents} cents "
        f"({state.percent_used:.1f}%)",
        f"Action: {state.action.value}",
        f"Remaining: {state.remaining_cents} cents",
        f"Requests: {state.total_requests} units: {state.total_units_consumed}",
    ]


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"dead_lettered={summary.dead_lettered} deferred={summary.deferred} "
        f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}"
    )


@contextmanager
def _runtime(settings: Settings, *, registry: HandlerRegistry | None = None) -> Iterator[Runtime]:
    settings.validate()
    runtime = build_runtime(settings, registry=registry)
    runtime.store.init_schema()
    try:
        yield runtime
    finally:
        runtime.close()
