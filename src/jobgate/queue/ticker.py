"""Periodic producers: enqueue one job per schedule slot."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from jobgate.queue.catalog import CATALOG
from jobgate.queue.models import EnqueueResult, JobQueue
from jobgate.queue.repository import JobStore
from jobgate.storage.common import to_utc_aware

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class PeriodicSchedule:
    """Fire `handler_type` once per `interval_seconds`, aligned to the Unix epoch."""

    name: str
    handler_type: str
    queue: JobQueue
    interval_seconds: int
    payload: bytes = b"{}"
    priority: int = 100

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError(f"Schedule {self.name!r}: interval_seconds must be > 0.")

    def slot_start(self, now: datetime) -> datetime:
        timestamp = int(to_utc_aware(now).timestamp())
        return datetime.fromtimestamp(timestamp - timestamp % self.interval_seconds, tz=UTC)

    def idempotency_key(self, slot_start: datetime) -> str:
        return f"tick:{self.name}:{slot_start.strftime('%Y%m%dT%H%M%SZ')}"


class Ticker:
    """Enqueues due schedule slots; repeated ticks within a slot collapse to one job."""

    def __init__(
        self,
        store: JobStore,
        schedules: Iterable[PeriodicSchedule],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.schedules = tuple(schedules)
        names = [schedule.name for schedule in self.schedules]
        if len(names) != len(set(names)):
            raise ValueError("Schedule names must be unique.")
        self._clock = clock or store.now

    def tick(self) -> list[EnqueueResult]:
        now = self._clock()
        results: list[EnqueueResult] = []
        for schedule in self.schedules:
            slot = schedule.slot_start(now)
            result = self.store.enqueue(
                schedule.queue,
                schedule.handler_type,
                schedule.payload,
                schedule.idempotency_key(slot),
                run_at=slot,
                priority=schedule.priority,
            )
            if result.created:
                logger.info(
                    "Scheduled %s for slot %s as job %s",
                    schedule.name,
                    slot.isoformat(),
                    result.job_id,
                )
            results.append(result)
        return results

    def run_loop(
        self,
        stop_event: threading.Event,
        *,
        interval_seconds: float = DEFAULT_TICK_SECONDS,
    ) -> None:
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Ticker error")
            stop_event.wait(interval_seconds)


def default_schedules() -> list[PeriodicSchedule]:
    """One schedule per catalogue job type that declares a cadence."""

    return [
        PeriodicSchedule(
            name=entry.job_type.value,
            handler_type=entry.job_type.value,
            queue=entry.queue,
            interval_seconds=entry.interval_seconds,
            priority=entry.priority,
        )
        for entry in CATALOG.values()
        if entry.interval_seconds is not None
    ]
