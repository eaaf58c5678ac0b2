"""Use-case services and component wiring over one SQLite database."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.engine import Engine

from jobgate.budget.gate import BudgetGate
from jobgate.budget.notifications import BudgetNotifier
from jobgate.budget.pricing import PricingTable
from jobgate.budget.repository import BudgetRepository
from jobgate.config import Settings
from jobgate.queue.admin import AdminControl
from jobgate.queue.catalog import queue_for
from jobgate.queue.dispatcher import Dispatcher
from jobgate.queue.handlers import HandlerRegistry
from jobgate.queue.models import EnqueueResult, JobQueue, JobView
from jobgate.queue.repository import JobStore
from jobgate.ratelimit.limiter import RateLimiter
from jobgate.ratelimit.models import RateLimitDecision, Tier
from jobgate.ratelimit.repository import RateLimitRepository
from jobgate.ratelimit.rules import RuleBook
from jobgate.ratelimit.windows import InMemoryWindowStore, SqliteWindowStore, WindowStore
from jobgate.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SUBMIT_ACTION = "submission"


@dataclass(slots=True)
class SubmitJob:
    """High-level command to admit and enqueue a job on behalf of an actor."""

    handler_type: str
    payload: bytes
    idempotency_key: str
    identity_key: str
    tier: Tier
    queue: JobQueue | None = None
    action_type: str = DEFAULT_SUBMIT_ACTION
    endpoint: str | None = None
    run_at: datetime | None = None
    priority: int = 100


@dataclass(slots=True)
class AdmissionResult:
    admitted: bool
    decision: RateLimitDecision
    enqueued: EnqueueResult | None = None

    @property
    def job(self) -> JobView | None:
        return self.enqueued.job if self.enqueued is not None else None

    @property
    def retry_after_seconds(self) -> int | None:
        """Seconds a denied caller should wait (HTTP 429 `Retry-After`)."""

        return None if self.admitted else self.decision.retry_after_seconds


class AdmissionService:
    """Rate-limit check first, then idempotent enqueue."""

    def __init__(self, *, store: JobStore, rate_limiter: RateLimiter) -> None:
        self.store = store
        self.rate_limiter = rate_limiter

    def submit(self, command: SubmitJob) -> AdmissionResult:
        decision = self.rate_limiter.check_limit(
            command.identity_key,
            command.action_type,
            command.tier,
            endpoint=command.endpoint,
        )
        if not decision.allowed:
            return AdmissionResult(admitted=False, decision=decision)

        queue = command.queue or queue_for(command.handler_type) or JobQueue.DEFAULT
        enqueued = self.store.enqueue(
            queue,
            command.handler_type,
            command.payload,
            command.idempotency_key,
            run_at=command.run_at,
            priority=command.priority,
        )
        if not enqueued.created:
            logger.debug(
                "Submission %s collapsed onto existing job %s",
                command.idempotency_key,
                enqueued.job_id,
            )
        return AdmissionResult(admitted=True, decision=decision, enqueued=enqueued)


def build_rate_limiter(
    settings: Settings,
    engine: Engine,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> RateLimiter:
    repository = RateLimitRepository(engine)
    windows: WindowStore
    if settings.rate_limit.window_store == "memory":
        windows = InMemoryWindowStore()
    else:
        windows = SqliteWindowStore(engine)
    return RateLimiter(
        rules=RuleBook(repository, refresh_seconds=settings.rate_limit.rule_refresh_seconds),
        windows=windows,
        repository=repository,
        fail_open=settings.rate_limit.fail_open,
        clock=clock,
    )


def build_budget_gate(
    settings: Settings,
    engine: Engine,
    *,
    notifier: BudgetNotifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> BudgetGate:
    return BudgetGate(
        BudgetRepository(engine),
        default_provider=settings.budget.default_provider,
        default_limit_cents=settings.budget.default_limit_cents,
        base_batch_size=settings.budget.base_batch_size,
        hard_stop_recheck_seconds=settings.budget.hard_stop_recheck_seconds,
        pricing=PricingTable.parse(settings.budget.ai_pricing),
        notifier=notifier,
        clock=clock,
    )


@dataclass(slots=True)
class Runtime:
    """All collaborators, built explicitly from one settings snapshot."""

    settings: Settings
    store: JobStore
    registry: HandlerRegistry
    rate_limiter: RateLimiter
    budget: BudgetGate
    admin: AdminControl = field(init=False)
    admission: AdmissionService = field(init=False)

    def __post_init__(self) -> None:
        self.admin = AdminControl(store=self.store, budget=self.budget)
        self.admission = AdmissionService(store=self.store, rate_limiter=self.rate_limiter)

    def dispatcher(self) -> Dispatcher:
        return Dispatcher.from_settings(
            self.settings,
            store=self.store,
            registry=self.registry,
            rate_limiter=self.rate_limiter,
            budget=self.budget,
        )

    def close(self) -> None:
        self.store.close()


def build_runtime(
    settings: Settings,
    *,
    registry: HandlerRegistry | None = None,
    notifier: BudgetNotifier | None = None,
) -> Runtime:
    """Wire store, limiter and budget gate over a shared engine; schema is not touched."""

    registry = registry or HandlerRegistry()
    store = JobStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        max_payload_bytes=settings.dispatcher.max_payload_bytes,
        policy_resolver=registry.policy_for,
    )
    return Runtime(
        settings=settings,
        store=store,
        registry=registry,
        rate_limiter=build_rate_limiter(settings, store.engine),
        budget=build_budget_gate(settings, store.engine, notifier=notifier),
    )
