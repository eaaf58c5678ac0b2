"""Error taxonomy shared by the job store, workers and gates."""

from __future__ import annotations

from datetime import datetime


class DuplicateIdempotencyKey(Exception):  # noqa: N818
    """A live job already owns the idempotency key.

    Never surfaced to producers: `enqueue` converts it into an idempotent
    success returning the existing job.
    """

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Idempotency key already in use: {idempotency_key}")
        self.idempotency_key = idempotency_key


class PayloadTooLarge(ValueError):  # noqa: N818
    """Payload exceeds the configured byte ceiling."""

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        super().__init__(f"Payload is {size_bytes} bytes, limit is {max_bytes} bytes.")
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class HandlerTransientFailure(Exception):
    """Handler failed in a way worth retrying with backoff."""


class HandlerTerminalFailure(Exception):
    """Handler asks for immediate dead-lettering, no retry."""


class LeaseLost(Exception):  # noqa: N818
    """The worker no longer holds the lease on the job it is executing."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        super().__init__(f"Lease lost on job {job_id} by worker {worker_id}")
        self.job_id = job_id
        self.worker_id = worker_id


class BudgetExceeded(Exception):  # noqa: N818
    """Pre-execution budget decision: the work must wait until `defer_until`."""

    def __init__(self, provider: str, action: str, defer_until: datetime | None) -> None:
        suffix = f" until {defer_until.isoformat()}" if defer_until is not None else ""
        super().__init__(f"Budget for {provider} is at {action}; deferred{suffix}")
        self.provider = provider
        self.action = action
        self.defer_until = defer_until


class JobNotFoundError(RuntimeError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(RuntimeError):
    """Requested transition is not allowed from the job's current state."""
