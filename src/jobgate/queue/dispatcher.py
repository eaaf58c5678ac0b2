"""In-process worker pools over the durable job store."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING

from jobgate.queue.handlers import HandlerRegistry
from jobgate.queue.models import JobQueue
from jobgate.queue.repository import JobStore
from jobgate.queue.slots import (
    DEFAULT_QUEUE_CAPS,
    DEFAULT_SCREENSHOT_CONCURRENCY,
    FairnessPolicy,
    JobQuota,
    QueueSlots,
)
from jobgate.queue.worker import (
    DEFAULT_LEASE_SECONDS,
    JobWorker,
    WorkerRunSummary,
    stop_on_signals,
)

if TYPE_CHECKING:
    from jobgate.budget.gate import BudgetGate
    from jobgate.config import Settings
    from jobgate.ratelimit.limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 10


class Dispatcher:
    """Runs a shared worker pool plus a dedicated SCREENSHOT pool.

    Shared-pool threads poll HIGH, DEFAULT, LOW and BULK under per-queue caps.
    A reserved share of threads polls BULK first so batch work keeps moving
    while user-facing queues are busy. SCREENSHOT threads never touch the
    shared queues, and shared threads never touch SCREENSHOT.

    A handler abandoned on timeout keeps its thread's claim capacity and
    queue slot until it returns, so a pool never runs more handlers than it
    has threads. The timed-out job itself may be retried elsewhere meanwhile.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        rate_limiter: RateLimiter | None = None,
        budget: BudgetGate | None = None,
        worker_id: str = "jobgate",
        pool_size: int = DEFAULT_POOL_SIZE,
        queue_caps: Mapping[JobQueue, int] | None = None,
        screenshot_concurrency: int = DEFAULT_SCREENSHOT_CONCURRENCY,
        fairness: FairnessPolicy | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        poll_interval_seconds: float = 1.0,
        reclaim_interval_seconds: float = 30.0,
    ) -> None:
        if pool_size < 0 or screenshot_concurrency < 0:
            raise ValueError("Pool sizes must be >= 0.")
        if pool_size == 0 and screenshot_concurrency == 0:
            raise ValueError("Dispatcher needs at least one worker thread.")
        caps = dict(DEFAULT_QUEUE_CAPS if queue_caps is None else queue_caps)
        if JobQueue.SCREENSHOT in caps:
            raise ValueError("SCREENSHOT concurrency is set by screenshot_concurrency.")
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.budget = budget
        self.worker_id = worker_id
        self.pool_size = pool_size
        self.screenshot_concurrency = screenshot_concurrency
        self.fairness = fairness or FairnessPolicy()
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.reclaim_interval_seconds = reclaim_interval_seconds
        self.slots = QueueSlots(caps)
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: JobStore,
        registry: HandlerRegistry,
        rate_limiter: RateLimiter | None = None,
        budget: BudgetGate | None = None,
    ) -> Dispatcher:
        dispatch = settings.dispatcher
        return cls(
            store=store,
            registry=registry,
            rate_limiter=rate_limiter,
            budget=budget,
            worker_id=dispatch.worker_id,
            pool_size=dispatch.pool_size,
            queue_caps=dispatch.queue_caps,
            screenshot_concurrency=dispatch.screenshot_concurrency,
            fairness=FairnessPolicy(reserved_share=dispatch.bulk_reserved_share),
            lease_seconds=dispatch.lease_seconds,
            poll_interval_seconds=dispatch.poll_interval_seconds,
            reclaim_interval_seconds=dispatch.reclaim_interval_seconds,
        )

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def build_workers(self, *, quota: JobQuota | None = None) -> list[JobWorker]:
        """One worker per thread; only the first one reclaims expired leases."""

        workers: list[JobWorker] = []
        for index in range(self.pool_size):
            workers.append(
                self._worker(
                    name=f"{self.worker_id}-shared-{index}",
                    claim_order=self.fairness.claim_order(index, self.pool_size),
                    slots=self.slots,
                    quota=quota,
                    reclaim=not workers,
                ),
            )
        for index in range(self.screenshot_concurrency):
            workers.append(
                self._worker(
                    name=f"{self.worker_id}-screenshot-{index}",
                    claim_order=(JobQueue.SCREENSHOT,),
                    slots=None,
                    quota=quota,
                    reclaim=not workers,
                ),
            )
        return workers

    def start(self, *, max_jobs: int | None = None, idle_exit: bool = False) -> None:
        """Start all pool threads and return immediately."""

        if self.running:
            raise RuntimeError("Dispatcher is already running.")
        self._stop_event.clear()
        self._summary = WorkerRunSummary()
        quota = JobQuota(max_jobs) if max_jobs is not None else None
        self._threads = [
            threading.Thread(
                target=self._thread_loop,
                args=(worker, idle_exit),
                name=worker.worker_id,
                daemon=True,
            )
            for worker in self.build_workers(quota=quota)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Dispatcher %s started: shared pool=%d, screenshot pool=%d, reserved bulk slots=%d",
            self.worker_id,
            self.pool_size,
            self.screenshot_concurrency,
            self.fairness.reserved_slots(self.pool_size),
        )

    def stop(self, timeout: float | None = None) -> WorkerRunSummary:
        """Stop claiming new jobs and wait for in-flight handlers."""

        self._stop_event.set()
        return self.join(timeout)

    def join(self, timeout: float | None = None) -> WorkerRunSummary:
        for thread in self._threads:
            thread.join(timeout=timeout)
        with self._summary_lock:
            return WorkerRunSummary(
                processed=self._summary.processed,
                succeeded=self._summary.succeeded,
                failed=self._summary.failed,
                retried=self._summary.retried,
                dead_lettered=self._summary.dead_lettered,
                deferred=self._summary.deferred,
                timeouts=self._summary.timeouts,
                lease_lost=self._summary.lease_lost,
                idle_polls=self._summary.idle_polls,
            )

    def run(self, *, max_jobs: int | None = None, idle_exit: bool = True) -> WorkerRunSummary:
        """Run the pools in the foreground until idle, stopped or `max_jobs` started."""

        with stop_on_signals(self._stop_event.set, label=f"Dispatcher {self.worker_id}"):
            self.start(max_jobs=max_jobs, idle_exit=idle_exit)
            while self.running:
                self._stop_event.wait(0.2)
                if self._stop_event.is_set():
                    break
            summary = self.join()
        logger.info(
            "Dispatcher %s finished: processed=%d succeeded=%d failed=%d deferred=%d",
            self.worker_id,
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.deferred,
        )
        return summary

    def _worker(
        self,
        *,
        name: str,
        claim_order: tuple[JobQueue, ...],
        slots: QueueSlots | None,
        quota: JobQuota | None,
        reclaim: bool,
    ) -> JobWorker:
        return JobWorker(
            store=self.store,
            registry=self.registry,
            worker_id=name,
            claim_order=claim_order,
            lease_seconds=self.lease_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            reclaim_interval_seconds=self.reclaim_interval_seconds if reclaim else 0,
            slots=slots,
            quota=quota,
            budget=self.budget,
            rate_limiter=self.rate_limiter,
            stop_event=self._stop_event,
        )

    def _thread_loop(self, worker: JobWorker, idle_exit: bool) -> None:
        while not self._stop_event.is_set():
            try:
                summary = worker.run_loop(
                    max_idle_polls=1 if idle_exit else None,
                    install_signal_handlers=False,
                )
            except Exception:
                logger.exception("Dispatcher worker %s error", worker.worker_id)
                self._stop_event.wait(self.poll_interval_seconds)
                continue
            with self._summary_lock:
                self._summary.merge(summary)
            return
