"""Persistence for monthly budget counters, overrides and alert markers."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from jobgate.budget.models import BudgetAlertView, BudgetOverrideView, BudgetState
from jobgate.storage.common import to_db_datetime, to_utc_aware
from jobgate.storage.sqlmodel_models import BudgetAlert, BudgetCounter, BudgetOverride


class BudgetRepository:
    """Counters are created lazily and only ever mutated by atomic increments."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def increment(  # noqa: PLR0913
        self,
        *,
        month: date,
        provider: str,
        requests: int,
        units: int,
        cost_cents: int,
        default_limit_cents: int,
        now: datetime,
    ) -> BudgetState:
        """Add usage to the (month, provider) counter in one upsert statement."""

        updated_at = to_db_datetime(now)
        statement = sqlite_insert(BudgetCounter).values(
            month=month,
            provider=provider,
            total_requests=requests,
            total_units_consumed=units,
            estimated_cost_cents=cost_cents,
            budget_limit_cents=default_limit_cents,
            created_at=updated_at,
            updated_at=updated_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["month", "provider"],
            set_={
                "total_requests": col(BudgetCounter.total_requests)
                + statement.excluded.total_requests,
                "total_units_consumed": col(BudgetCounter.total_units_consumed)
                + statement.excluded.total_units_consumed,
                "estimated_cost_cents": col(BudgetCounter.estimated_cost_cents)
                + statement.excluded.estimated_cost_cents,
                "updated_at": statement.excluded.updated_at,
            },
        ).returning(
            col(BudgetCounter.month),
            col(BudgetCounter.provider),
            col(BudgetCounter.total_requests),
            col(BudgetCounter.total_units_consumed),
            col(BudgetCounter.estimated_cost_cents),
            col(BudgetCounter.budget_limit_cents),
            col(BudgetCounter.updated_at),
        )
        with Session(self.engine) as session:
            row = session.exec(statement).one()
            session.commit()
        return BudgetState(
            month=row[0],
            provider=row[1],
            total_requests=row[2],
            total_units_consumed=row[3],
            estimated_cost_cents=row[4],
            budget_limit_cents=row[5],
            updated_at=to_utc_aware(row[6]),
        )

    def ensure_counter(
        self,
        *,
        month: date,
        provider: str,
        default_limit_cents: int,
        now: datetime,
    ) -> BudgetState:
        created_at = to_db_datetime(now)
        statement = (
            sqlite_insert(BudgetCounter)
            .values(
                month=month,
                provider=provider,
                total_requests=0,
                total_units_consumed=0,
                estimated_cost_cents=0,
                budget_limit_cents=default_limit_cents,
                created_at=created_at,
                updated_at=created_at,
            )
            .on_conflict_do_nothing(index_elements=["month", "provider"])
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
            row = self._get_counter_row(session=session, month=month, provider=provider)
            if row is None:
                raise RuntimeError(f"Budget counter missing after insert: {provider} {month}")
            return _to_state(row)

    def set_limit(  # noqa: PLR0913
        self,
        *,
        month: date,
        provider: str,
        limit_cents: int,
        reason: str,
        actor: str | None,
        now: datetime,
    ) -> tuple[int, BudgetState]:
        """Replace the month's limit and record the override; returns (previous_limit, state)."""

        with Session(self.engine) as session:
            row = self._get_counter_row(session=session, month=month, provider=provider)
            if row is None:
                raise RuntimeError(f"Budget counter not found: {provider} {month}")
            previous_limit = row.budget_limit_cents
            session.exec(
                sa_update(BudgetCounter)
                .where(
                    col(BudgetCounter.month) == month,
                    col(BudgetCounter.provider) == provider,
                )
                .values(
                    budget_limit_cents=limit_cents,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.add(
                BudgetOverride(
                    month=month,
                    provider=provider,
                    previous_limit_cents=previous_limit,
                    new_limit_cents=limit_cents,
                    reason=reason,
                    actor=actor,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
            updated = self._get_counter_row(session=session, month=month, provider=provider)
            if updated is None:
                raise RuntimeError(f"Budget counter not found: {provider} {month}")
            return previous_limit, _to_state(updated)

    def record_alert(
        self,
        *,
        month: date,
        provider: str,
        threshold_percent: int,
        percent_used: float,
        now: datetime,
    ) -> bool:
        """Insert the one-time alert marker; False when it already exists."""

        with Session(self.engine) as session:
            session.add(
                BudgetAlert(
                    month=month,
                    provider=provider,
                    threshold_percent=threshold_percent,
                    percent_used=percent_used,
                    created_at=to_db_datetime(now),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def list_alerts(self, *, provider: str, month: date | None = None) -> list[BudgetAlertView]:
        with Session(self.engine) as session:
            statement = (
                select(BudgetAlert)
                .where(BudgetAlert.provider == provider)
                .order_by(col(BudgetAlert.month).desc(), col(BudgetAlert.threshold_percent).asc())
            )
            if month is not None:
                statement = statement.where(BudgetAlert.month == month)
            rows = session.exec(statement).all()
            return [
                BudgetAlertView(
                    month=row.month,
                    provider=row.provider,
                    threshold_percent=row.threshold_percent,
                    percent_used=row.percent_used,
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def list_overrides(self, *, provider: str, limit: int = 50) -> list[BudgetOverrideView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BudgetOverride)
                .where(BudgetOverride.provider == provider)
                .order_by(col(BudgetOverride.created_at).desc(), col(BudgetOverride.id).desc())
                .limit(limit),
            ).all()
            return [
                BudgetOverrideView(
                    override_id=row.id or 0,
                    month=row.month,
                    provider=row.provider,
                    previous_limit_cents=row.previous_limit_cents,
                    new_limit_cents=row.new_limit_cents,
                    reason=row.reason,
                    actor=row.actor,
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def history(self, *, provider: str, since_month: date) -> list[BudgetState]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BudgetCounter)
                .where(
                    BudgetCounter.provider == provider,
                    col(BudgetCounter.month) >= since_month,
                )
                .order_by(col(BudgetCounter.month).desc()),
            ).all()
            return [_to_state(row) for row in rows]

    def _get_counter_row(
        self,
        *,
        session: Session,
        month: date,
        provider: str,
    ) -> BudgetCounter | None:
        return session.exec(
            select(BudgetCounter).where(
                BudgetCounter.month == month,
                BudgetCounter.provider == provider,
            ),
        ).one_or_none()


def _to_state(row: BudgetCounter) -> BudgetState:
    return BudgetState(
        month=row.month,
        provider=row.provider,
        total_requests=row.total_requests,
        total_units_consumed=row.total_units_consumed,
        estimated_cost_cents=row.estimated_cost_cents,
        budget_limit_cents=row.budget_limit_cents,
        updated_at=to_utc_aware(row.updated_at),
    )
