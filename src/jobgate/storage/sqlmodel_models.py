"""SQLModel ORM tables for the job store, rate limiter and budget gate."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_jobs_idempotency_key_live",
            "idempotency_key",
            unique=True,
            sqlite_where=text("state != 'dead'"),
        ),
        Index("idx_jobs_ready", "queue", "state", "priority", "run_at"),
        Index("idx_jobs_lease_expiry", "state", "lease_expires_at"),
    )

    job_id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    handler_type: str = Field(index=True)
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    idempotency_key: str
    priority: int = 100
    state: str = Field(index=True)
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_owner: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    attempts: int = 0
    max_attempts: int = 5
    backoff_base_seconds: float = 30.0
    timeout_seconds: int = 600
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failure_class: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    failed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    state_from: str | None = None
    state_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueState(SQLModel, table=True):
    __tablename__ = "queue_states"  # type: ignore[bad-override]

    queue: str = Field(primary_key=True)
    paused: bool = Field(sa_column=Column(Boolean, nullable=False, server_default=text("0")))
    reason: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitRule(SQLModel, table=True):
    __tablename__ = "rate_limit_rules"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("action_type", "tier", name="uq_rate_limit_rules_action_tier"),
    )

    id: int | None = Field(default=None, primary_key=True)
    action_type: str = Field(index=True)
    tier: str
    limit_count: int
    window_seconds: int
    updated_by: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitWindow(SQLModel, table=True):
    __tablename__ = "rate_limit_windows"  # type: ignore[bad-override]

    identity_key: str = Field(primary_key=True)
    action_type: str = Field(primary_key=True)
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    window_seconds: int
    count: int = 0
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class RateLimitViolation(SQLModel, table=True):
    __tablename__ = "rate_limit_violations"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_rate_limit_violations_identity", "identity_key", "action_type"),
    )

    id: int | None = Field(default=None, primary_key=True)
    identity_key: str
    action_type: str
    tier: str
    endpoint: str | None = None
    violation_count: int = 1
    window_started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    violated_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class BudgetCounter(SQLModel, table=True):
    __tablename__ = "budget_counters"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("month", "provider", name="uq_budget_counters_month_provider"),
    )

    id: int | None = Field(default=None, primary_key=True)
    month: date = Field(sa_column=Column(Date, nullable=False, index=True))
    provider: str
    total_requests: int = 0
    total_units_consumed: int = Field(
        default=0,
        sa_column=Column(BigInteger, nullable=False, server_default=text("0")),
    )
    estimated_cost_cents: int = 0
    budget_limit_cents: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BudgetOverride(SQLModel, table=True):
    __tablename__ = "budget_overrides"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    month: date = Field(sa_column=Column(Date, nullable=False, index=True))
    provider: str
    previous_limit_cents: int
    new_limit_cents: int
    reason: str = Field(sa_column=Column(Text, nullable=False))
    actor: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BudgetAlert(SQLModel, table=True):
    __tablename__ = "budget_alerts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "month",
            "provider",
            "threshold_percent",
            name="uq_budget_alerts_month_provider_threshold",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    month: date = Field(sa_column=Column(Date, nullable=False))
    provider: str
    threshold_percent: int
    percent_used: float
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
