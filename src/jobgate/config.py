"""Runtime configuration for the job store, dispatcher, rate limiter and budget gate."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from jobgate.budget.models import DEFAULT_BUDGET_LIMIT_CENTS, DEFAULT_PROVIDER
from jobgate.budget.pricing import DEFAULT_AI_PRICING, PricingTable
from jobgate.queue.models import JobQueue
from jobgate.queue.repository import DEFAULT_MAX_PAYLOAD_BYTES
from jobgate.queue.slots import (
    DEFAULT_BULK_RESERVED_SHARE,
    DEFAULT_QUEUE_CAPS,
    DEFAULT_SCREENSHOT_CONCURRENCY,
)

WINDOW_STORES = ("sqlite", "memory")


@dataclass(slots=True)
class DispatcherSettings:
    """Worker pool sizing, leases and polling."""

    worker_id: str = field(default_factory=lambda: f"jobgate-{os.getpid()}")
    lease_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    reclaim_interval_seconds: float = 30.0
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    pool_size: int = 10
    screenshot_concurrency: int = DEFAULT_SCREENSHOT_CONCURRENCY
    bulk_reserved_share: float = DEFAULT_BULK_RESERVED_SHARE
    queue_caps: dict[JobQueue, int] = field(default_factory=lambda: dict(DEFAULT_QUEUE_CAPS))


@dataclass(slots=True)
class RateLimitSettings:
    """Admission throttling settings."""

    window_store: str = "sqlite"
    rule_refresh_seconds: float = 600.0
    fail_open: bool = True


@dataclass(slots=True)
class BudgetSettings:
    """Monthly AI spend settings."""

    default_provider: str = DEFAULT_PROVIDER
    default_limit_cents: int = DEFAULT_BUDGET_LIMIT_CENTS
    base_batch_size: int = 20
    hard_stop_recheck_seconds: float = 900.0
    ai_pricing: str = DEFAULT_AI_PRICING


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(".jobgate.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("JOBGATE_DB_PATH", ".jobgate.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOBGATE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("JOBGATE_LOG_LEVEL", "INFO").strip().upper(),
            dispatcher=DispatcherSettings(
                worker_id=os.getenv("JOBGATE_WORKER_ID", "").strip() or f"jobgate-{os.getpid()}",
                lease_seconds=float(os.getenv("JOBGATE_LEASE_SECONDS", "300")),
                poll_interval_seconds=float(os.getenv("JOBGATE_POLL_INTERVAL_SECONDS", "1.0")),
                reclaim_interval_seconds=float(
                    os.getenv("JOBGATE_RECLAIM_INTERVAL_SECONDS", "30"),
                ),
                max_payload_bytes=int(
                    os.getenv("JOBGATE_MAX_PAYLOAD_BYTES", str(DEFAULT_MAX_PAYLOAD_BYTES)),
                ),
                pool_size=int(os.getenv("JOBGATE_POOL_SIZE", "10")),
                screenshot_concurrency=int(
                    os.getenv(
                        "JOBGATE_SCREENSHOT_CONCURRENCY",
                        str(DEFAULT_SCREENSHOT_CONCURRENCY),
                    ),
                ),
                bulk_reserved_share=float(
                    os.getenv("JOBGATE_BULK_RESERVED_SHARE", str(DEFAULT_BULK_RESERVED_SHARE)),
                ),
                queue_caps=_collect_queue_caps(),
            ),
            rate_limit=RateLimitSettings(
                window_store=os.getenv("JOBGATE_RATE_LIMIT_STORE", "sqlite").strip().lower(),
                rule_refresh_seconds=float(
                    os.getenv("JOBGATE_RATE_LIMIT_RULE_REFRESH_SECONDS", "600"),
                ),
                fail_open=_env_bool("JOBGATE_RATE_LIMIT_FAIL_OPEN", default=True),
            ),
            budget=BudgetSettings(
                default_provider=os.getenv("JOBGATE_BUDGET_DEFAULT_PROVIDER", DEFAULT_PROVIDER)
                .strip()
                .lower(),
                default_limit_cents=int(
                    os.getenv(
                        "JOBGATE_BUDGET_DEFAULT_LIMIT_CENTS",
                        str(DEFAULT_BUDGET_LIMIT_CENTS),
                    ),
                ),
                base_batch_size=int(os.getenv("JOBGATE_BUDGET_BASE_BATCH_SIZE", "20")),
                hard_stop_recheck_seconds=float(
                    os.getenv("JOBGATE_BUDGET_HARD_STOP_RECHECK_SECONDS", "900"),
                ),
                ai_pricing=os.getenv("JOBGATE_AI_PRICING", DEFAULT_AI_PRICING),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("JOBGATE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"JOBGATE_LOG_LEVEL is not a logging level: {self.log_level!r}")

        dispatcher = self.dispatcher
        if dispatcher.lease_seconds <= 0:
            raise ValueError("JOBGATE_LEASE_SECONDS must be > 0.")
        if dispatcher.poll_interval_seconds < 0:
            raise ValueError("JOBGATE_POLL_INTERVAL_SECONDS must be >= 0.")
        if dispatcher.reclaim_interval_seconds < 0:
            raise ValueError("JOBGATE_RECLAIM_INTERVAL_SECONDS must be >= 0.")
        if dispatcher.max_payload_bytes <= 0:
            raise ValueError("JOBGATE_MAX_PAYLOAD_BYTES must be > 0.")
        if dispatcher.pool_size < 0:
            raise ValueError("JOBGATE_POOL_SIZE must be >= 0.")
        if dispatcher.screenshot_concurrency < 0:
            raise ValueError("JOBGATE_SCREENSHOT_CONCURRENCY must be >= 0.")
        if dispatcher.pool_size == 0 and dispatcher.screenshot_concurrency == 0:
            raise ValueError(
                "JOBGATE_POOL_SIZE and JOBGATE_SCREENSHOT_CONCURRENCY cannot both be 0.",
            )
        if not 0.0 <= dispatcher.bulk_reserved_share <= 1.0:
            raise ValueError("JOBGATE_BULK_RESERVED_SHARE must be within [0, 1].")

        if self.rate_limit.window_store not in WINDOW_STORES:
            raise ValueError(
                "JOBGATE_RATE_LIMIT_STORE must be one of "
                f"{', '.join(WINDOW_STORES)}, got {self.rate_limit.window_store!r}",
            )
        if self.rate_limit.rule_refresh_seconds < 0:
            raise ValueError("JOBGATE_RATE_LIMIT_RULE_REFRESH_SECONDS must be >= 0.")

        if not self.budget.default_provider:
            raise ValueError("JOBGATE_BUDGET_DEFAULT_PROVIDER must not be empty.")
        if self.budget.default_limit_cents < 0:
            raise ValueError("JOBGATE_BUDGET_DEFAULT_LIMIT_CENTS must be >= 0.")
        if self.budget.base_batch_size <= 0:
            raise ValueError("JOBGATE_BUDGET_BASE_BATCH_SIZE must be > 0.")
        if self.budget.hard_stop_recheck_seconds <= 0:
            raise ValueError("JOBGATE_BUDGET_HARD_STOP_RECHECK_SECONDS must be > 0.")
        try:
            PricingTable.parse(self.budget.ai_pricing)
        except ValueError as error:
            raise ValueError(f"Invalid JOBGATE_AI_PRICING: {error}") from error


def _collect_queue_caps() -> dict[JobQueue, int]:
    caps = dict(DEFAULT_QUEUE_CAPS)
    raw = os.getenv("JOBGATE_QUEUE_CONCURRENCY", "").strip()
    if not raw:
        return caps

    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid JOBGATE_QUEUE_CONCURRENCY entry: "
                f"{token!r}. Expected format '<QUEUE>:<cap>'.",
            )
        queue_raw, cap_raw = token.rsplit(":", 1)
        try:
            queue = JobQueue.parse(queue_raw)
        except ValueError as error:
            raise ValueError(f"Invalid JOBGATE_QUEUE_CONCURRENCY queue: {error}") from error
        if queue == JobQueue.SCREENSHOT:
            raise ValueError(
                "JOBGATE_QUEUE_CONCURRENCY cannot cap SCREENSHOT; "
                "use JOBGATE_SCREENSHOT_CONCURRENCY.",
            )
        try:
            cap = int(cap_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid JOBGATE_QUEUE_CONCURRENCY cap for {queue.value}: {cap_raw!r}",
            ) from error
        if cap < 0:
            raise ValueError(
                f"Invalid JOBGATE_QUEUE_CONCURRENCY cap for {queue.value}: {cap} (must be >= 0)",
            )
        caps[queue] = cap
    return caps


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
