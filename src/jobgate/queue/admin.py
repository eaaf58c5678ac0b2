"""Operator actions over the queue and the budget gate."""

from __future__ import annotations

import logging

from jobgate.budget.gate import BudgetGate
from jobgate.budget.models import BudgetState
from jobgate.queue.models import JobQueue, JobView, QueueDepthView, QueueStateView
from jobgate.queue.repository import JobStore

logger = logging.getLogger(__name__)


class AdminControl:
    """Thin operator facade; every action is a single store or gate call."""

    def __init__(self, *, store: JobStore, budget: BudgetGate | None = None) -> None:
        self.store = store
        self.budget = budget

    def pause_queue(self, queue: JobQueue, reason: str | None = None) -> QueueStateView:
        """Stop new claims on `queue`; leased jobs keep running to completion."""

        state = self.store.set_queue_paused(queue, paused=True, reason=reason)
        logger.info("Queue %s paused: %s", queue.value, reason or "no reason given")
        return state

    def resume_queue(self, queue: JobQueue) -> QueueStateView:
        state = self.store.set_queue_paused(queue, paused=False)
        logger.info("Queue %s resumed", queue.value)
        return state

    def requeue(self, job_id: str) -> JobView:
        job = self.store.requeue(job_id)
        logger.info("Job %s (%s) requeued from dead-letter", job.job_id, job.handler_type)
        return job

    def delete_job(self, job_id: str) -> None:
        self.store.delete_job(job_id)
        logger.info("Job %s deleted", job_id)

    def list_dead_letter(
        self,
        queue: JobQueue | None = None,
        *,
        limit: int = 100,
    ) -> list[JobView]:
        return self.store.list_dead_letter(queue, limit=limit)

    def queue_depth(self) -> list[QueueDepthView]:
        return self.store.queue_depth()

    def budget_state(self, provider: str | None = None) -> BudgetState:
        if self.budget is None:
            raise RuntimeError("AdminControl was built without a budget gate.")
        return self.budget.state(provider)

    def reclaim_expired_leases(self) -> int:
        return self.store.reclaim_expired_leases()
