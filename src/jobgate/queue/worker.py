"""Queue worker that leases jobs and runs registered handlers."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from jobgate.queue.failure_classifier import (
    OutcomeClassification,
    OutcomeKind,
    classify_exception,
    classify_result,
    classify_timeout,
    classify_unknown_handler,
)
from jobgate.queue.handlers import (
    DEADLINE_EXCEEDED,
    LEASE_EXPIRING,
    SHUTDOWN,
    ExecutionContext,
    HandlerRegistration,
    HandlerRegistry,
    HandlerResult,
    normalize_result,
)
from jobgate.queue.models import SHARED_QUEUE_ORDER, FailureClass, JobQueue, JobState, JobView
from jobgate.queue.repository import JobStore
from jobgate.queue.slots import JobQuota, QueueSlots

if TYPE_CHECKING:
    from jobgate.budget.gate import BudgetGate
    from jobgate.ratelimit.limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300.0
_WATCH_INTERVAL_SECONDS = 0.05


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    timeouts: int = 0
    lease_lost: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.deferred += other.deferred
        self.timeouts += other.timeouts
        self.lease_lost += other.lease_lost
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class _HandlerRun:
    outcome: HandlerResult | None = None
    error: Exception | None = None


class JobWorker:
    """Claims jobs from its queues in order and executes them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        worker_id: str,
        claim_order: tuple[JobQueue, ...] = SHARED_QUEUE_ORDER,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        poll_interval_seconds: float = 1.0,
        reclaim_interval_seconds: float = 30.0,
        slots: QueueSlots | None = None,
        quota: JobQuota | None = None,
        budget: BudgetGate | None = None,
        rate_limiter: RateLimiter | None = None,
        cancel_margin_seconds: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0.")
        if not claim_order:
            raise ValueError("claim_order must name at least one queue.")
        self.store = store
        self.registry = registry
        self.worker_id = worker_id
        self.claim_order = claim_order
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.reclaim_interval_seconds = reclaim_interval_seconds
        self.slots = slots
        self.quota = quota
        self.budget = budget
        self.rate_limiter = rate_limiter
        self.cancel_margin_seconds = (
            cancel_margin_seconds
            if cancel_margin_seconds is not None
            else min(30.0, lease_seconds * 0.1)
        )
        self._stop_event = stop_event or threading.Event()
        self._last_reclaim_at: float | None = None
        self._abandoned: tuple[threading.Thread, JobQueue] | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        self._maybe_reclaim()
        if self._handler_still_running():
            summary.idle_polls = 1
            return summary
        claimed = self._claim()
        if claimed is None:
            summary.idle_polls = 1
            return summary

        job, queue = claimed
        summary.processed = 1
        try:
            self._process(job=job, summary=summary)
        finally:
            if self.slots is not None and self._abandoned is None:
                self.slots.release(queue)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run until idle, stopped or `max_jobs` processed.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling until stopped).
            install_signal_handlers: Stop gracefully on SIGINT/SIGTERM.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        handlers = (
            stop_on_signals(self.request_stop, label=f"Worker {self.worker_id}")
            if install_signal_handlers
            else nullcontext()
        )
        with handlers:
            while True:
                if self.stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate
                if self.quota is not None and self.quota.exhausted:
                    return aggregate

                summary = self.run_once()
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _handler_still_running(self) -> bool:
        """True while a handler abandoned on timeout still holds this worker's capacity."""

        if self._abandoned is None:
            return False
        thread, queue = self._abandoned
        if thread.is_alive():
            return True
        self._abandoned = None
        if self.slots is not None:
            self.slots.release(queue)
        logger.info(
            "Abandoned handler thread %s finished; worker %s resumes claiming",
            thread.name,
            self.worker_id,
        )
        return False

    def _maybe_reclaim(self) -> None:
        if self.reclaim_interval_seconds <= 0:
            return
        now = time.monotonic()
        if (
            self._last_reclaim_at is not None
            and now - self._last_reclaim_at < self.reclaim_interval_seconds
        ):
            return
        self._last_reclaim_at = now
        self.store.reclaim_expired_leases()

    def _claim(self) -> tuple[JobView, JobQueue] | None:
        if self.quota is not None and not self.quota.try_take():
            return None
        for queue in self.claim_order:
            if self.stop_requested:
                break
            if self.slots is not None and not self.slots.try_acquire(queue):
                continue
            job = self.store.claim_next(queue, self.worker_id, self.lease_seconds)
            if job is not None:
                logger.info(
                    "Worker %s claimed job %s (%s) from %s, attempt %d/%d",
                    self.worker_id,
                    job.job_id,
                    job.handler_type,
                    queue.value,
                    job.attempts + 1,
                    job.max_attempts,
                )
                return job, queue
            if self.slots is not None:
                self.slots.release(queue)
        if self.quota is not None:
            self.quota.give_back()
        return None

    def _process(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        registration = self.registry.get(job.handler_type)
        if registration is None:
            self._apply(
                job=job,
                outcome=classify_unknown_handler(job.handler_type),
                summary=summary,
            )
            return

        batch_size: int | None = None
        if registration.budget_provider is not None and self.budget is not None:
            decision = self.budget.plan(
                registration.budget_provider,
                critical=job.queue == JobQueue.HIGH,
            )
            if not decision.may_proceed and decision.defer_until is not None:
                reason = f"budget {decision.action.value} for {decision.provider}"
                if self.store.defer(
                    job.job_id,
                    decision.defer_until,
                    reason,
                    worker_id=self.worker_id,
                ):
                    summary.deferred = 1
                    logger.info(
                        "Job %s deferred until %s: %s",
                        job.job_id,
                        decision.defer_until.isoformat(),
                        reason,
                    )
                else:
                    summary.lease_lost = 1
                return
            batch_size = decision.batch_size

        outcome = self._invoke(job=job, registration=registration, batch_size=batch_size)
        self._apply(job=job, outcome=outcome, summary=summary)

    def _invoke(
        self,
        *,
        job: JobView,
        registration: HandlerRegistration,
        batch_size: int | None,
    ) -> OutcomeClassification:
        context = ExecutionContext(
            job=job,
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
            deadline=time.monotonic() + job.timeout_seconds,
            renew_lease=lambda: self.store.heartbeat(
                job.job_id,
                self.worker_id,
                self.lease_seconds,
            ),
            batch_size=batch_size,
            budget=self.budget,
            rate_limiter=self.rate_limiter,
        )
        run = _HandlerRun()

        def _target() -> None:
            try:
                run.outcome = normalize_result(registration.handler(job.payload, context))
            except Exception as error:  # noqa: BLE001
                run.error = error

        thread = threading.Thread(
            target=_target,
            name=f"jobgate-handler-{job.job_id}",
            daemon=True,
        )
        thread.start()
        while thread.is_alive():
            thread.join(timeout=_WATCH_INTERVAL_SECONDS)
            if not thread.is_alive():
                break
            if context.time_remaining() <= 0:
                context.cancel(DEADLINE_EXCEEDED)
                thread.join(timeout=_WATCH_INTERVAL_SECONDS)
                if thread.is_alive():
                    logger.warning(
                        "Job %s (%s) exceeded its %ds deadline; abandoning handler thread",
                        job.job_id,
                        job.handler_type,
                        job.timeout_seconds,
                    )
                    self._abandoned = (thread, job.queue)
                    return classify_timeout(job.timeout_seconds)
                break
            if context.lease_remaining() <= self.cancel_margin_seconds:
                context.cancel(LEASE_EXPIRING)
            if self.stop_requested:
                context.cancel(SHUTDOWN)

        if run.error is not None:
            outcome = classify_exception(run.error)
            if outcome.failure_class == FailureClass.HANDLER_CRASHED:
                logger.error(
                    "Handler %s crashed on job %s",
                    job.handler_type,
                    job.job_id,
                    exc_info=run.error,
                )
            return outcome
        if run.outcome is None:
            raise RuntimeError(f"Handler thread for job {job.job_id} ended without an outcome.")
        return classify_result(run.outcome)

    def _apply(
        self,
        *,
        job: JobView,
        outcome: OutcomeClassification,
        summary: WorkerRunSummary,
    ) -> None:
        if outcome.kind == OutcomeKind.COMPLETE:
            if self.store.complete(job.job_id, worker_id=self.worker_id):
                summary.succeeded = 1
                logger.info("Job %s (%s) completed", job.job_id, job.handler_type)
            else:
                summary.lease_lost = 1
                logger.warning(
                    "Job %s finished after worker %s lost its lease; result discarded",
                    job.job_id,
                    self.worker_id,
                )
            return

        if outcome.kind == OutcomeKind.DEFER:
            run_at = outcome.defer_until or self.store.now() + timedelta(
                seconds=job.backoff_base_seconds,
            )
            if self.store.defer(
                job.job_id,
                run_at,
                outcome.reason or "deferred",
                worker_id=self.worker_id,
            ):
                summary.deferred = 1
            else:
                summary.lease_lost = 1
            return

        if outcome.failure_class == FailureClass.TIMEOUT:
            summary.timeouts = 1
        updated = self.store.fail(
            job.job_id,
            outcome.reason or "failed",
            worker_id=self.worker_id,
            failure_class=outcome.failure_class or FailureClass.HANDLER_TRANSIENT,
            terminal=outcome.terminal,
            classification=outcome.to_event_details(),
        )
        if updated is None:
            summary.lease_lost = 1
            logger.warning(
                "Job %s failure not recorded: worker %s no longer holds the lease",
                job.job_id,
                self.worker_id,
            )
            return
        summary.failed = 1
        if updated.state == JobState.DEAD:
            summary.dead_lettered = 1
        else:
            summary.retried = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)


@contextmanager
def stop_on_signals(stop: Callable[[], None], *, label: str) -> Iterator[None]:
    """Route SIGINT/SIGTERM to `stop` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("%s stopping on %s", label, name)
        stop()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
