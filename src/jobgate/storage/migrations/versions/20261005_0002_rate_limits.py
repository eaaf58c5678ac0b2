"""Rate limit rules, ephemeral windows and violation audit log."""

from __future__ import annotations

from datetime import UTC, datetime

import sqlalchemy as sa

from alembic import op

revision = "20261005_0002"
down_revision = "20261005_0001"
branch_labels = None
depends_on = None

# (action_type, tier, limit_count, window_seconds)
_DEFAULT_RULES: tuple[tuple[str, str, int, int], ...] = (
    ("bootstrap", "anonymous", 5, 3600),
    ("login", "anonymous", 10, 900),
    ("login", "logged_in", 20, 900),
    ("search", "anonymous", 20, 60),
    ("search", "logged_in", 50, 60),
    ("search", "trusted", 100, 60),
    ("vote", "logged_in", 100, 3600),
    ("vote", "trusted", 200, 3600),
    ("submission", "logged_in", 10, 3600),
    ("submission", "trusted", 20, 3600),
    ("contact", "logged_in", 20, 3600),
    ("contact", "trusted", 50, 3600),
    ("preferences_read", "anonymous", 10, 3600),
    ("preferences_read", "logged_in", 100, 3600),
    ("preferences_read", "trusted", 500, 3600),
    ("preferences_update", "anonymous", 5, 3600),
    ("preferences_update", "logged_in", 50, 3600),
    ("preferences_update", "trusted", 200, 3600),
)


def upgrade() -> None:
    rules = op.create_table(
        "rate_limit_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("limit_count", sa.Integer(), nullable=False),
        sa.Column("window_seconds", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("limit_count > 0", name="ck_rate_limit_rules_limit_positive"),
        sa.CheckConstraint("window_seconds > 0", name="ck_rate_limit_rules_window_positive"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("action_type", "tier", name="uq_rate_limit_rules_action_tier"),
    )
    op.create_index(
        "ix_rate_limit_rules_action_type",
        "rate_limit_rules",
        ["action_type"],
        unique=False,
    )

    op.create_table(
        "rate_limit_windows",
        sa.Column("identity_key", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_seconds", sa.Integer(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("identity_key", "action_type"),
    )
    op.create_index(
        "ix_rate_limit_windows_expires_at",
        "rate_limit_windows",
        ["expires_at"],
        unique=False,
    )

    op.create_table(
        "rate_limit_violations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("identity_key", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("violation_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("violated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_rate_limit_violations_identity",
        "rate_limit_violations",
        ["identity_key", "action_type"],
        unique=False,
    )
    op.create_index(
        "ix_rate_limit_violations_violated_at",
        "rate_limit_violations",
        ["violated_at"],
        unique=False,
    )

    seeded_at = datetime.now(tz=UTC).replace(tzinfo=None)
    op.bulk_insert(
        rules,
        [
            {
                "action_type": action_type,
                "tier": tier,
                "limit_count": limit_count,
                "window_seconds": window_seconds,
                "updated_by": None,
                "updated_at": seeded_at,
            }
            for action_type, tier, limit_count, window_seconds in _DEFAULT_RULES
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_rate_limit_violations_violated_at", table_name="rate_limit_violations")
    op.drop_index("idx_rate_limit_violations_identity", table_name="rate_limit_violations")
    op.drop_table("rate_limit_violations")
    op.drop_index("ix_rate_limit_windows_expires_at", table_name="rate_limit_windows")
    op.drop_table("rate_limit_windows")
    op.drop_index("ix_rate_limit_rules_action_type", table_name="rate_limit_rules")
    op.drop_table("rate_limit_rules")
