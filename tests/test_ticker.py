from __future__ import annotations

import threading
from datetime import UTC, datetime

import allure
import pytest

from jobgate.queue.catalog import JobType
from jobgate.queue.models import JobQueue, JobState
from jobgate.queue.repository import JobStore
from jobgate.queue.ticker import PeriodicSchedule, Ticker, default_schedules

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Periodic Producers"),
]


def test_slots_are_aligned_to_interval() -> None:
    schedule = PeriodicSchedule("stocks", "stock_refresh", JobQueue.HIGH, interval_seconds=300)

    slot = schedule.slot_start(datetime(2026, 3, 10, 12, 7, 31, tzinfo=UTC))

    assert slot == datetime(2026, 3, 10, 12, 5, tzinfo=UTC)
    assert schedule.idempotency_key(slot) == "tick:stocks:20260310T120500Z"


def test_repeated_ticks_in_one_slot_enqueue_once(clocked_store: JobStore, clock) -> None:
    ticker = Ticker(
        clocked_store,
        [PeriodicSchedule("stocks", "stock_refresh", JobQueue.HIGH, interval_seconds=300)],
    )

    first = ticker.tick()
    clock.advance(60)
    second = ticker.tick()
    clock.advance(240)
    third = ticker.tick()

    assert first[0].created is True
    assert second[0].created is False
    assert second[0].job_id == first[0].job_id
    assert third[0].created is True
    jobs = clocked_store.list_jobs(queue=JobQueue.HIGH, state=JobState.PENDING)
    assert len(jobs) == 2
    assert first[0].job.run_at == datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def test_schedule_names_must_be_unique(clocked_store: JobStore) -> None:
    schedule = PeriodicSchedule("dup", "echo", JobQueue.LOW, interval_seconds=60)

    with pytest.raises(ValueError, match="unique"):
        Ticker(clocked_store, [schedule, schedule])
    with pytest.raises(ValueError, match="interval_seconds"):
        PeriodicSchedule("bad", "echo", JobQueue.LOW, interval_seconds=0)


def test_default_schedules_cover_periodic_catalog_entries() -> None:
    schedules = {schedule.name: schedule for schedule in default_schedules()}

    assert schedules[JobType.STOCK_REFRESH.value].interval_seconds == 300
    assert schedules[JobType.STOCK_REFRESH.value].queue == JobQueue.HIGH
    assert schedules[JobType.CLICK_ROLLUP.value].queue == JobQueue.LOW
    assert JobType.AI_TAGGING.value not in schedules
    assert JobType.MESSAGE_RELAY.value not in schedules


def test_run_loop_ticks_until_stopped(clocked_store: JobStore) -> None:
    stop = threading.Event()
    ticker = Ticker(
        clocked_store,
        [PeriodicSchedule("rollup", "click_rollup", JobQueue.LOW, interval_seconds=3600)],
    )
    original_tick = ticker.tick

    def _tick_once():
        results = original_tick()
        stop.set()
        return results

    ticker.tick = _tick_once  # type: ignore[method-assign]
    ticker.run_loop(stop, interval_seconds=0.01)

    assert len(clocked_store.list_jobs(queue=JobQueue.LOW)) == 1
