"""Handler registry, handler result type and execution context."""

from __future__ import annotations

import importlib
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from jobgate.budget.models import DEFAULT_PROVIDER
from jobgate.queue.catalog import lookup, retry_policy_for
from jobgate.queue.models import JobView
from jobgate.queue.policy import RetryPolicy

if TYPE_CHECKING:
    from jobgate.budget.gate import BudgetGate
    from jobgate.ratelimit.limiter import RateLimiter

LEASE_EXPIRING = "lease_expiring"
LEASE_LOST = "lease_lost"
DEADLINE_EXCEEDED = "deadline_exceeded"
SHUTDOWN = "shutdown"


class HandlerStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass(slots=True, frozen=True)
class HandlerResult:
    """Explicit handler outcome: `succeeded | failed(reason, terminal) | deferred(run_at)`."""

    status: HandlerStatus
    reason: str | None = None
    terminal: bool = False
    run_at: datetime | None = None

    @classmethod
    def succeeded(cls) -> HandlerResult:
        return cls(status=HandlerStatus.SUCCEEDED)

    @classmethod
    def failed(cls, reason: str, *, terminal: bool = False) -> HandlerResult:
        return cls(status=HandlerStatus.FAILED, reason=reason, terminal=terminal)

    @classmethod
    def deferred(cls, run_at: datetime, reason: str = "deferred by handler") -> HandlerResult:
        return cls(status=HandlerStatus.DEFERRED, reason=reason, run_at=run_at)


class ExecutionContext:
    """What a running handler may see and do besides reading its payload.

    `cancel_event` is set when the lease is about to lapse without renewal,
    when the handler deadline passes, or when the worker shuts down.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        worker_id: str,
        lease_seconds: float,
        deadline: float,
        renew_lease: Callable[[], bool],
        batch_size: int | None = None,
        budget: BudgetGate | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.job = job
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.deadline = deadline
        self.batch_size = batch_size
        self.budget = budget
        self.rate_limiter = rate_limiter
        self.cancel_event = threading.Event()
        self.cancel_reason: str | None = None
        self.lease_lost = False
        self._renew_lease = renew_lease
        self._lock = threading.Lock()
        self._lease_deadline = time.monotonic() + lease_seconds

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def attempt(self) -> int:
        return self.job.attempts + 1

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def lease_remaining(self) -> float:
        with self._lock:
            return self._lease_deadline - time.monotonic()

    def time_remaining(self) -> float:
        return self.deadline - time.monotonic()

    def heartbeat(self) -> bool:
        """Renew the lease; False (and cancellation) when it is no longer held."""

        if self.lease_lost:
            return False
        renewed = self._renew_lease()
        if not renewed:
            self.lease_lost = True
            self.cancel(LEASE_LOST)
            return False
        with self._lock:
            self._lease_deadline = time.monotonic() + self.lease_seconds
            if self.cancel_reason == LEASE_EXPIRING:
                self.cancel_reason = None
                self.cancel_event.clear()
        return True

    def cancel(self, reason: str) -> None:
        with self._lock:
            if not self.cancel_event.is_set():
                self.cancel_reason = reason
            self.cancel_event.set()


Handler = Callable[[bytes, ExecutionContext], HandlerResult | bool | None]


@dataclass(slots=True)
class HandlerRegistration:
    handler_type: str
    handler: Handler
    policy: RetryPolicy
    budget_provider: str | None = None


class HandlerRegistry:
    """Lookup table from a job's handler type to its callable and retry policy."""

    def __init__(self) -> None:
        self._registrations: dict[str, HandlerRegistration] = {}

    def register(
        self,
        handler_type: str,
        handler: Handler,
        *,
        policy: RetryPolicy | None = None,
        budget_provider: str | None = None,
    ) -> None:
        if not handler_type.strip():
            raise ValueError("handler_type must not be empty.")
        if handler_type in self._registrations:
            raise ValueError(f"Handler already registered: {handler_type}")
        entry = lookup(handler_type)
        if budget_provider is None and entry is not None and entry.ai_cost:
            budget_provider = DEFAULT_PROVIDER
        self._registrations[handler_type] = HandlerRegistration(
            handler_type=handler_type,
            handler=handler,
            policy=policy or retry_policy_for(handler_type),
            budget_provider=budget_provider,
        )

    def handler(
        self,
        handler_type: str,
        *,
        policy: RetryPolicy | None = None,
        budget_provider: str | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of `register`."""

        def _decorator(func: Handler) -> Handler:
            self.register(handler_type, func, policy=policy, budget_provider=budget_provider)
            return func

        return _decorator

    def get(self, handler_type: str) -> HandlerRegistration | None:
        return self._registrations.get(handler_type)

    def policy_for(self, handler_type: str) -> RetryPolicy:
        registration = self._registrations.get(handler_type)
        if registration is not None:
            return registration.policy
        return retry_policy_for(handler_type)

    def handler_types(self) -> list[str]:
        return sorted(self._registrations)

    def load_factory(self, target: str) -> None:
        """Import `module:callable` and let it register handlers on this registry."""

        module_name, sep, attr = target.partition(":")
        if not sep or not module_name or not attr:
            raise ValueError(f"Handler factory must look like 'module:callable', got {target!r}")
        module = importlib.import_module(module_name)
        factory = getattr(module, attr, None)
        if not callable(factory):
            raise ValueError(f"Handler factory {target!r} is not callable.")
        factory(self)


def normalize_result(value: HandlerResult | bool | None) -> HandlerResult:
    if isinstance(value, HandlerResult):
        return value
    if value is None or value is True:
        return HandlerResult.succeeded()
    if value is False:
        return HandlerResult.failed("handler returned False")
    raise TypeError(f"Unsupported handler return value: {value!r}")
