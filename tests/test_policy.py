from __future__ import annotations

import random

import allure
import pytest

from jobgate.queue.catalog import CATALOG, JobType, lookup, queue_for, retry_policy_for
from jobgate.queue.models import JobQueue
from jobgate.queue.policy import (
    DEFAULT_RETRY_POLICY,
    RetryPolicy,
    backoff_floor_seconds,
    compute_backoff_seconds,
)

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Retry Policy"),
]


def test_backoff_doubles_per_attempt_with_bounded_jitter() -> None:
    rng = random.Random(42)

    for attempts in range(1, 6):
        delay = compute_backoff_seconds(attempts=attempts, base_seconds=30, rng=rng)
        floor = backoff_floor_seconds(attempts=attempts, base_seconds=30)
        assert floor == 30 * 2**attempts
        assert floor <= delay <= floor + 30


def test_zero_base_means_immediate_retry() -> None:
    assert compute_backoff_seconds(attempts=4, base_seconds=0, rng=random.Random(1)) == 0


def test_retry_policy_validation() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="backoff_base_seconds"):
        RetryPolicy(backoff_base_seconds=-1)
    with pytest.raises(ValueError, match="timeout_seconds"):
        RetryPolicy(timeout_seconds=0)


def test_catalog_places_job_types_on_their_queues() -> None:
    assert queue_for("stock_refresh") == JobQueue.HIGH
    assert queue_for("message_relay") == JobQueue.HIGH
    assert queue_for("rss_feed_refresh") == JobQueue.DEFAULT
    assert queue_for("sitemap_generation") == JobQueue.LOW
    assert queue_for("ai_tagging") == JobQueue.BULK
    assert queue_for("screenshot_capture") == JobQueue.SCREENSHOT
    assert queue_for("something_else") is None


def test_catalog_retry_policies() -> None:
    assert retry_policy_for("inbound_email").max_attempts == 10
    assert retry_policy_for("ai_tagging").max_attempts == 3
    assert retry_policy_for("screenshot_capture").timeout_seconds == 180
    assert retry_policy_for("unknown") == DEFAULT_RETRY_POLICY


def test_only_ai_tagging_is_budgeted() -> None:
    budgeted = [entry.job_type for entry in CATALOG.values() if entry.ai_cost]

    assert budgeted == [JobType.AI_TAGGING]
    entry = lookup("ai_tagging")
    assert entry is not None
    assert entry.interval_seconds is None
