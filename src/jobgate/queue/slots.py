"""Per-queue concurrency caps and fairness ordering for worker pools."""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass

from jobgate.queue.models import SHARED_QUEUE_ORDER, JobQueue

DEFAULT_QUEUE_CAPS: Mapping[JobQueue, int] = {
    JobQueue.HIGH: 20,
    JobQueue.DEFAULT: 10,
    JobQueue.LOW: 5,
    JobQueue.BULK: 8,
}
DEFAULT_SCREENSHOT_CONCURRENCY = 3
DEFAULT_BULK_RESERVED_SHARE = 0.10


class QueueSlots:
    """Counts in-flight jobs per queue against a cap.

    A queue without a cap entry is unbounded.
    """

    def __init__(self, caps: Mapping[JobQueue, int]) -> None:
        for queue, cap in caps.items():
            if cap < 0:
                raise ValueError(f"Concurrency cap for {queue.value} must be >= 0.")
        self._caps = dict(caps)
        self._in_flight: dict[JobQueue, int] = {}
        self._lock = threading.Lock()

    def try_acquire(self, queue: JobQueue) -> bool:
        with self._lock:
            current = self._in_flight.get(queue, 0)
            cap = self._caps.get(queue)
            if cap is not None and current >= cap:
                return False
            self._in_flight[queue] = current + 1
            return True

    def release(self, queue: JobQueue) -> None:
        with self._lock:
            current = self._in_flight.get(queue, 0)
            if current <= 0:
                raise RuntimeError(f"Slot released without acquire: {queue.value}")
            self._in_flight[queue] = current - 1

    def in_flight(self, queue: JobQueue) -> int:
        with self._lock:
            return self._in_flight.get(queue, 0)

    def cap(self, queue: JobQueue) -> int | None:
        return self._caps.get(queue)


class JobQuota:
    """Shared upper bound on how many jobs a pool may start."""

    def __init__(self, limit: int | None) -> None:
        if limit is not None and limit < 0:
            raise ValueError("Job quota must be >= 0.")
        self.limit = limit
        self._taken = 0
        self._lock = threading.Lock()

    def try_take(self) -> bool:
        with self._lock:
            if self.limit is not None and self._taken >= self.limit:
                return False
            self._taken += 1
            return True

    def give_back(self) -> None:
        with self._lock:
            self._taken = max(0, self._taken - 1)

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self.limit is not None and self._taken >= self.limit


@dataclass(slots=True, frozen=True)
class FairnessPolicy:
    """Decides which queues each shared-pool slot polls first.

    The first `reserved_slots` slots poll BULK before anything else; the rest
    poll user-facing queues in rank order and reach BULK last. Every slot still
    falls through to the remaining queues when its preferred one is empty.
    """

    reserved_share: float = DEFAULT_BULK_RESERVED_SHARE
    order: tuple[JobQueue, ...] = SHARED_QUEUE_ORDER
    reserved_queue: JobQueue = JobQueue.BULK

    def __post_init__(self) -> None:
        if not 0.0 <= self.reserved_share <= 1.0:
            raise ValueError("reserved_share must be within [0, 1].")
        if self.reserved_queue not in self.order:
            raise ValueError("reserved_queue must be part of the claim order.")

    def reserved_slots(self, pool_size: int) -> int:
        if pool_size <= 0 or self.reserved_share <= 0:
            return 0
        return min(pool_size, max(1, math.ceil(pool_size * self.reserved_share)))

    def claim_order(self, slot_index: int, pool_size: int) -> tuple[JobQueue, ...]:
        if slot_index < self.reserved_slots(pool_size):
            rest = tuple(queue for queue in self.order if queue != self.reserved_queue)
            return (self.reserved_queue, *rest)
        return self.order
