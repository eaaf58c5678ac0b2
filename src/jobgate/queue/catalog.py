"""Catalogue of platform job types: queue placement, retry policy and cadence."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from jobgate.queue.models import JobQueue
from jobgate.queue.policy import DEFAULT_RETRY_POLICY, RetryPolicy


class JobType(str, Enum):
    RSS_FEED_REFRESH = "rss_feed_refresh"
    WEATHER_REFRESH = "weather_refresh"
    LISTING_EXPIRATION = "listing_expiration"
    LISTING_REMINDER = "listing_reminder"
    PROMOTION_EXPIRATION = "promotion_expiration"
    RANK_RECALCULATION = "rank_recalculation"
    INBOUND_EMAIL = "inbound_email"
    ACCOUNT_MERGE_CLEANUP = "account_merge_cleanup"
    STOCK_REFRESH = "stock_refresh"
    MESSAGE_RELAY = "message_relay"
    SOCIAL_REFRESH = "social_refresh"
    LINK_HEALTH_CHECK = "link_health_check"
    SITEMAP_GENERATION = "sitemap_generation"
    CLICK_ROLLUP = "click_rollup"
    AI_TAGGING = "ai_tagging"
    LISTING_IMAGE_PROCESSING = "listing_image_processing"
    LISTING_IMAGE_CLEANUP = "listing_image_cleanup"
    SCREENSHOT_CAPTURE = "screenshot_capture"


@dataclass(slots=True, frozen=True)
class JobTypeEntry:
    """Where a job type runs and how it is retried."""

    job_type: JobType
    queue: JobQueue
    description: str
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    priority: int = 100
    interval_seconds: int | None = None
    ai_cost: bool = False


_HOUR = 3600
_DAY = 24 * _HOUR

CATALOG: dict[JobType, JobTypeEntry] = {
    entry.job_type: entry
    for entry in (
        JobTypeEntry(
            JobType.RSS_FEED_REFRESH,
            JobQueue.DEFAULT,
            "Feed refresh",
            interval_seconds=15 * 60,
        ),
        JobTypeEntry(
            JobType.WEATHER_REFRESH,
            JobQueue.DEFAULT,
            "Weather refresh",
            interval_seconds=_HOUR,
        ),
        JobTypeEntry(
            JobType.LISTING_EXPIRATION,
            JobQueue.DEFAULT,
            "Listing expiration",
            interval_seconds=_DAY,
        ),
        JobTypeEntry(
            JobType.LISTING_REMINDER,
            JobQueue.DEFAULT,
            "Listing reminder",
            interval_seconds=_DAY,
        ),
        JobTypeEntry(
            JobType.PROMOTION_EXPIRATION,
            JobQueue.DEFAULT,
            "Promotion expiration",
            interval_seconds=_DAY,
        ),
        JobTypeEntry(
            JobType.RANK_RECALCULATION,
            JobQueue.DEFAULT,
            "Rank recalculation",
            interval_seconds=_HOUR,
        ),
        JobTypeEntry(
            JobType.INBOUND_EMAIL,
            JobQueue.DEFAULT,
            "Inbound email parsing",
            retry_policy=RetryPolicy(max_attempts=10, backoff_base_seconds=30.0),
            interval_seconds=60,
        ),
        JobTypeEntry(
            JobType.ACCOUNT_MERGE_CLEANUP,
            JobQueue.DEFAULT,
            "Account merge cleanup",
            interval_seconds=_DAY,
        ),
        JobTypeEntry(
            JobType.STOCK_REFRESH,
            JobQueue.HIGH,
            "Stock refresh",
            interval_seconds=5 * 60,
        ),
        JobTypeEntry(
            JobType.MESSAGE_RELAY,
            JobQueue.HIGH,
            "Message relay",
            retry_policy=RetryPolicy(max_attempts=10, backoff_base_seconds=30.0),
        ),
        JobTypeEntry(
            JobType.SOCIAL_REFRESH,
            JobQueue.LOW,
            "Social refresh",
            interval_seconds=30 * 60,
        ),
        JobTypeEntry(
            JobType.LINK_HEALTH_CHECK,
            JobQueue.LOW,
            "Link health check",
            interval_seconds=7 * _DAY,
        ),
        JobTypeEntry(
            JobType.SITEMAP_GENERATION,
            JobQueue.LOW,
            "Sitemap generation",
            interval_seconds=_DAY,
        ),
        JobTypeEntry(
            JobType.CLICK_ROLLUP,
            JobQueue.LOW,
            "Click rollup",
            interval_seconds=_HOUR,
        ),
        JobTypeEntry(
            JobType.AI_TAGGING,
            JobQueue.BULK,
            "AI tagging",
            retry_policy=RetryPolicy(max_attempts=3, backoff_base_seconds=60.0),
            ai_cost=True,
        ),
        JobTypeEntry(
            JobType.LISTING_IMAGE_PROCESSING,
            JobQueue.BULK,
            "Listing image processing",
        ),
        JobTypeEntry(
            JobType.LISTING_IMAGE_CLEANUP,
            JobQueue.BULK,
            "Listing image cleanup",
        ),
        JobTypeEntry(
            JobType.SCREENSHOT_CAPTURE,
            JobQueue.SCREENSHOT,
            "Screenshot capture",
            retry_policy=RetryPolicy(
                max_attempts=5,
                backoff_base_seconds=120.0,
                timeout_seconds=180,
            ),
        ),
    )
}


def lookup(handler_type: str) -> JobTypeEntry | None:
    """Catalogue entry for a handler type string, if it names a platform job type."""

    try:
        return CATALOG[JobType(handler_type)]
    except ValueError:
        return None


def retry_policy_for(handler_type: str) -> RetryPolicy:
    entry = lookup(handler_type)
    return entry.retry_policy if entry is not None else DEFAULT_RETRY_POLICY


def queue_for(handler_type: str) -> JobQueue | None:
    entry = lookup(handler_type)
    return entry.queue if entry is not None else None
