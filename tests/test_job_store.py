from __future__ import annotations

import random
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from jobgate.queue.errors import JobNotFoundError, JobStateError, PayloadTooLarge
from jobgate.queue.models import FailureClass, JobQueue, JobState
from jobgate.queue.repository import JobStore

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Durable Job Store"),
]


def test_enqueue_with_same_idempotency_key_returns_existing_job(store: JobStore) -> None:
    first = store.enqueue(JobQueue.DEFAULT, "echo", b'{"n": 1}', "listing:42:expire")
    second = store.enqueue(JobQueue.DEFAULT, "echo", b'{"n": 2}', "listing:42:expire")

    assert first.created is True
    assert second.created is False
    assert second.job_id == first.job_id
    assert second.job.payload == b'{"n": 1}'
    assert len(store.list_jobs()) == 1


def test_enqueue_after_dead_letter_creates_fresh_job(store: JobStore) -> None:
    original = store.enqueue(JobQueue.LOW, "echo", b"{}", "link-check:7", max_attempts=1)
    claimed = store.claim_next(JobQueue.LOW, "worker-a", 60)
    assert claimed is not None
    failed = store.fail(original.job_id, "boom", worker_id="worker-a")
    assert failed is not None
    assert failed.state == JobState.DEAD

    fresh = store.enqueue(JobQueue.LOW, "echo", b"{}", "link-check:7")

    assert fresh.created is True
    assert fresh.job_id != original.job_id
    assert fresh.job.state == JobState.PENDING


def test_enqueue_rejects_oversized_payload(tmp_path: Path) -> None:
    small_store = JobStore(tmp_path / "small.db", max_payload_bytes=16)
    small_store.init_schema()

    with pytest.raises(PayloadTooLarge) as error:
        small_store.enqueue(JobQueue.BULK, "echo", b"x" * 17, "too-big")

    assert error.value.size_bytes == 17
    assert error.value.max_bytes == 16
    assert small_store.list_jobs() == []
    small_store.close()


def test_enqueue_rejects_blank_handler_and_key(store: JobStore) -> None:
    with pytest.raises(ValueError, match="handler_type"):
        store.enqueue(JobQueue.DEFAULT, " ", b"{}", "key")
    with pytest.raises(ValueError, match="idempotency_key"):
        store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "")


def test_claim_orders_by_priority_then_run_at(clocked_store, clock) -> None:
    store = clocked_store
    late = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "late", priority=100)
    clock.advance(1)
    urgent = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "urgent", priority=10)
    clock.advance(1)
    later = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "later", priority=100)

    claimed = [store.claim_next(JobQueue.DEFAULT, "w", 60) for _ in range(3)]

    assert [job.job_id for job in claimed if job is not None] == [
        urgent.job_id,
        late.job_id,
        later.job_id,
    ]
    assert store.claim_next(JobQueue.DEFAULT, "w", 60) is None


def test_claim_skips_future_jobs_and_other_queues(clocked_store, clock) -> None:
    store = clocked_store
    store.enqueue(JobQueue.HIGH, "echo", b"{}", "future", run_at=clock() + timedelta(minutes=5))
    store.enqueue(JobQueue.LOW, "echo", b"{}", "other-queue")

    assert store.claim_next(JobQueue.HIGH, "w", 60) is None

    clock.advance(301)
    claimed = store.claim_next(JobQueue.HIGH, "w", 60)
    assert claimed is not None
    assert claimed.idempotency_key == "future"
    assert claimed.state == JobState.LEASED
    assert claimed.lease_owner == "w"


def test_concurrent_claims_hand_out_each_job_once(store: JobStore) -> None:
    for index in range(12):
        store.enqueue(JobQueue.DEFAULT, "echo", b"{}", f"job-{index}")

    claimed: list[str] = []
    lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        while True:
            job = store.claim_next(JobQueue.DEFAULT, worker_id, 60)
            if job is None:
                return
            with lock:
                claimed.append(job.job_id)

    threads = [threading.Thread(target=_drain, args=(f"w{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 12
    assert len(set(claimed)) == 12


def test_fail_schedules_retry_with_exponential_backoff(db_path: Path, clock) -> None:
    store = JobStore(db_path, clock=clock, rng=random.Random(7))
    store.init_schema()
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "retry-me")
    store.claim_next(JobQueue.DEFAULT, "w", 60)

    updated = store.fail(created.job_id, "upstream 503", worker_id="w")

    assert updated is not None
    assert updated.state == JobState.PENDING
    assert updated.attempts == 1
    assert updated.last_error == "upstream 503"
    assert updated.failure_class == FailureClass.HANDLER_TRANSIENT
    assert updated.lease_owner is None
    delay = (updated.run_at - clock()).total_seconds()
    base = updated.backoff_base_seconds
    assert base * 2 <= delay <= base * 3
    assert store.claim_next(JobQueue.DEFAULT, "w", 60) is None
    store.close()


def test_job_dead_letters_after_max_attempts(clocked_store, clock) -> None:
    store = clocked_store
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "flaky", max_attempts=3)

    states = []
    for attempt in range(3):
        claimed = store.claim_next(JobQueue.DEFAULT, "w", 60)
        assert claimed is not None, f"attempt {attempt + 1} was not claimable"
        updated = store.fail(created.job_id, f"failure {attempt + 1}", worker_id="w")
        assert updated is not None
        states.append(updated.state)
        clock.advance(3600)

    assert states == [JobState.PENDING, JobState.PENDING, JobState.DEAD]
    dead = store.list_dead_letter()
    assert [job.job_id for job in dead] == [created.job_id]
    assert dead[0].attempts == 3
    assert dead[0].last_error == "failure 3"

    details = store.get_job_details(created.job_id)
    assert details is not None
    event_types = [event.event_type for event in details.events]
    assert event_types.count("claimed") == 3
    assert event_types.count("retry_scheduled") == 2
    assert event_types[-1] == "dead_lettered"
    attempts_recorded = [
        (event.details["attempt"], event.details["max_attempts"])
        for event in details.events
        if event.event_type in {"retry_scheduled", "dead_lettered"}
    ]
    assert attempts_recorded == [(1, 3), (2, 3), (3, 3)]


def test_terminal_failure_dead_letters_immediately(store: JobStore) -> None:
    created = store.enqueue(JobQueue.HIGH, "echo", b"{}", "bad-input")
    store.claim_next(JobQueue.HIGH, "w", 60)

    updated = store.fail(
        created.job_id,
        "malformed payload",
        worker_id="w",
        failure_class=FailureClass.HANDLER_TERMINAL,
        terminal=True,
    )

    assert updated is not None
    assert updated.state == JobState.DEAD
    assert updated.attempts == 1
    assert updated.failure_class == FailureClass.HANDLER_TERMINAL


def test_fail_by_non_owner_is_ignored(store: JobStore) -> None:
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "owned")
    store.claim_next(JobQueue.DEFAULT, "owner", 60)

    assert store.fail(created.job_id, "not mine", worker_id="intruder") is None
    job = store.get_job(created.job_id)
    assert job is not None
    assert job.state == JobState.LEASED
    assert job.attempts == 0


def test_complete_is_idempotent(store: JobStore) -> None:
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "done-twice")
    store.claim_next(JobQueue.DEFAULT, "w", 60)

    assert store.complete(created.job_id, worker_id="w") is True
    assert store.complete(created.job_id, worker_id="w") is True

    job = store.get_job(created.job_id)
    assert job is not None
    assert job.state == JobState.DONE
    assert job.completed_at is not None
    assert job.lease_owner is None


def test_expired_lease_is_reclaimed_without_consuming_attempt(clocked_store, clock) -> None:
    store = clocked_store
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "crashy-worker")
    store.claim_next(JobQueue.DEFAULT, "dead-worker", 10)

    assert store.reclaim_expired_leases() == 0
    clock.advance(11)
    assert store.reclaim_expired_leases() == 1

    job = store.get_job(created.job_id)
    assert job is not None
    assert job.state == JobState.PENDING
    assert job.attempts == 0
    assert job.failure_class == FailureClass.LEASE_LOST
    details = store.get_job_details(created.job_id)
    assert details is not None
    reclaim_event = details.events[-1]
    assert reclaim_event.event_type == "lease_reclaimed"
    assert reclaim_event.details == {
        "previous_owner": "dead-worker",
        "lease_expires_at": "2026-03-10T12:00:10+00:00",
    }

    assert store.heartbeat(created.job_id, "dead-worker", 10) is False
    assert store.complete(created.job_id, worker_id="dead-worker") is False
    reclaimed = store.claim_next(JobQueue.DEFAULT, "new-worker", 10)
    assert reclaimed is not None
    assert reclaimed.job_id == created.job_id


def test_heartbeat_extends_lease(clocked_store, clock) -> None:
    store = clocked_store
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "long-running")
    claimed = store.claim_next(JobQueue.DEFAULT, "w", 10)
    assert claimed is not None

    clock.advance(8)
    assert store.heartbeat(created.job_id, "w", 10) is True
    clock.advance(8)
    assert store.reclaim_expired_leases() == 0

    job = store.get_job(created.job_id)
    assert job is not None
    assert job.lease_expires_at is not None
    assert job.lease_expires_at > claimed.lease_expires_at


def test_defer_does_not_consume_attempt(clocked_store, clock) -> None:
    store = clocked_store
    created = store.enqueue(JobQueue.BULK, "ai_tagging", b"{}", "tag:1")
    store.claim_next(JobQueue.BULK, "w", 60)
    resume_at = clock() + timedelta(days=3)

    assert store.defer(created.job_id, resume_at, "budget HARD_STOP", worker_id="w") is True

    job = store.get_job(created.job_id)
    assert job is not None
    assert job.state == JobState.PENDING
    assert job.attempts == 0
    assert job.run_at == resume_at
    assert job.failure_class == FailureClass.BUDGET_DEFERRED
    assert store.defer(created.job_id, resume_at, "again", worker_id="w") is False


def test_paused_queue_is_not_claimed(store: JobStore) -> None:
    store.enqueue(JobQueue.BULK, "echo", b"{}", "bulk-1")
    store.set_queue_paused(JobQueue.BULK, paused=True, reason="maintenance")

    assert store.is_queue_paused(JobQueue.BULK) is True
    assert store.claim_next(JobQueue.BULK, "w", 60) is None

    store.set_queue_paused(JobQueue.BULK, paused=False)
    assert store.claim_next(JobQueue.BULK, "w", 60) is not None

    states = {view.queue: view for view in store.list_queue_states()}
    assert states[JobQueue.BULK].paused is False
    assert states[JobQueue.HIGH].updated_at is None


def test_requeue_resets_dead_job(store: JobStore) -> None:
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "revive", max_attempts=1)
    store.claim_next(JobQueue.DEFAULT, "w", 60)
    store.fail(created.job_id, "boom", worker_id="w")

    revived = store.requeue(created.job_id)

    assert revived.state == JobState.PENDING
    assert revived.attempts == 0
    assert revived.last_error is None
    assert revived.failure_class is None
    details = store.get_job_details(created.job_id)
    assert details is not None
    assert details.events[-1].event_type == "manual_requeue"
    assert details.events[-1].details == {"previous_attempts": 1}


def test_requeue_rejects_live_job_and_taken_key(store: JobStore) -> None:
    created = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "shared-key", max_attempts=1)
    with pytest.raises(JobStateError, match="Only dead jobs"):
        store.requeue(created.job_id)

    store.claim_next(JobQueue.DEFAULT, "w", 60)
    store.fail(created.job_id, "boom", worker_id="w")
    store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "shared-key")

    with pytest.raises(JobStateError, match="live job already owns"):
        store.requeue(created.job_id)


def test_delete_job_only_for_pending_or_dead(store: JobStore) -> None:
    pending = store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "delete-me")
    leased = store.enqueue(JobQueue.HIGH, "echo", b"{}", "busy")
    store.claim_next(JobQueue.HIGH, "w", 60)

    store.delete_job(pending.job_id)
    assert store.get_job(pending.job_id) is None
    with pytest.raises(JobStateError, match="Only pending or dead"):
        store.delete_job(leased.job_id)
    with pytest.raises(JobNotFoundError):
        store.delete_job("missing")


def test_queue_depth_counts_states(clocked_store, clock) -> None:
    store = clocked_store
    store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "ready")
    store.enqueue(JobQueue.DEFAULT, "echo", b"{}", "later", run_at=clock() + timedelta(hours=1))
    store.enqueue(JobQueue.HIGH, "echo", b"{}", "leased")
    store.claim_next(JobQueue.HIGH, "w", 60)
    store.set_queue_paused(JobQueue.LOW, paused=True)

    depth = {view.queue: view for view in store.queue_depth()}

    assert depth[JobQueue.DEFAULT].pending == 2
    assert depth[JobQueue.DEFAULT].ready == 1
    assert depth[JobQueue.HIGH].leased == 1
    assert depth[JobQueue.LOW].paused is True
    assert depth[JobQueue.SCREENSHOT].pending == 0
