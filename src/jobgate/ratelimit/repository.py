"""Persistence for rate limit rules and the violation audit log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from jobgate.ratelimit.models import RateLimitRuleView, RateLimitViolationView, Tier
from jobgate.storage.common import to_db_datetime, to_utc_aware
from jobgate.storage.sqlmodel_models import RateLimitRule, RateLimitViolation


class RateLimitRepository:
    """Rule configuration and append-only violation rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_rules(self) -> list[RateLimitRuleView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RateLimitRule).order_by(
                    col(RateLimitRule.action_type).asc(),
                    col(RateLimitRule.tier).asc(),
                ),
            ).all()
            return [_to_rule_view(row) for row in rows]

    def upsert_rule(  # noqa: PLR0913
        self,
        *,
        action_type: str,
        tier: Tier,
        limit_count: int,
        window_seconds: int,
        updated_by: str | None,
        now: datetime,
    ) -> RateLimitRuleView:
        if limit_count <= 0:
            raise ValueError("limit_count must be > 0.")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0.")
        updated_at = to_db_datetime(now)
        statement = sqlite_insert(RateLimitRule).values(
            action_type=action_type,
            tier=tier.value,
            limit_count=limit_count,
            window_seconds=window_seconds,
            updated_by=updated_by,
            updated_at=updated_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["action_type", "tier"],
            set_={
                "limit_count": limit_count,
                "window_seconds": window_seconds,
                "updated_by": updated_by,
                "updated_at": updated_at,
            },
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        return RateLimitRuleView(
            action_type=action_type,
            tier=tier,
            limit_count=limit_count,
            window_seconds=window_seconds,
            updated_by=updated_by,
            updated_at=to_utc_aware(updated_at),
        )

    def record_violation(  # noqa: PLR0913
        self,
        *,
        identity_key: str,
        action_type: str,
        tier: Tier,
        endpoint: str | None,
        violation_count: int,
        window_started_at: datetime,
        violated_at: datetime,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                RateLimitViolation(
                    identity_key=identity_key,
                    action_type=action_type,
                    tier=tier.value,
                    endpoint=endpoint,
                    violation_count=violation_count,
                    window_started_at=to_db_datetime(window_started_at),
                    violated_at=to_db_datetime(violated_at),
                ),
            )
            session.commit()

    def list_violations(
        self,
        *,
        identity_key: str | None = None,
        action_type: str | None = None,
        limit: int = 50,
    ) -> list[RateLimitViolationView]:
        with Session(self.engine) as session:
            statement = (
                select(RateLimitViolation)
                .order_by(
                    col(RateLimitViolation.violated_at).desc(),
                    col(RateLimitViolation.id).desc(),
                )
                .limit(limit)
            )
            if identity_key is not None:
                statement = statement.where(RateLimitViolation.identity_key == identity_key)
            if action_type is not None:
                statement = statement.where(RateLimitViolation.action_type == action_type)
            rows = session.exec(statement).all()
            return [
                RateLimitViolationView(
                    violation_id=row.id or 0,
                    identity_key=row.identity_key,
                    action_type=row.action_type,
                    tier=Tier(row.tier),
                    endpoint=row.endpoint,
                    violation_count=row.violation_count,
                    window_started_at=to_utc_aware(row.window_started_at),
                    violated_at=to_utc_aware(row.violated_at),
                )
                for row in rows
            ]


def _to_rule_view(row: RateLimitRule) -> RateLimitRuleView:
    return RateLimitRuleView(
        action_type=row.action_type,
        tier=Tier(row.tier),
        limit_count=row.limit_count,
        window_seconds=row.window_seconds,
        updated_by=row.updated_by,
        updated_at=to_utc_aware(row.updated_at),
    )
