"""Domain models for the monthly cost budget gate."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

DEFAULT_PROVIDER = "anthropic"
DEFAULT_BUDGET_LIMIT_CENTS = 50_000
ALERT_THRESHOLDS_PERCENT: tuple[int, ...] = (75, 90, 100)


class BudgetAction(str, Enum):
    """Graduated response to monthly spend."""

    NORMAL = "NORMAL"
    REDUCE = "REDUCE"
    QUEUE_NEXT_CYCLE = "QUEUE_NEXT_CYCLE"
    HARD_STOP = "HARD_STOP"


def action_for(*, cost_cents: int, limit_cents: int) -> BudgetAction:
    """Map spend to an action; integer comparisons keep threshold edges exact."""

    if limit_cents <= 0:
        return BudgetAction.HARD_STOP
    if cost_cents * 100 >= limit_cents * 100:
        return BudgetAction.HARD_STOP
    if cost_cents * 100 >= limit_cents * 90:
        return BudgetAction.QUEUE_NEXT_CYCLE
    if cost_cents * 100 >= limit_cents * 75:
        return BudgetAction.REDUCE
    return BudgetAction.NORMAL


def percent_used(*, cost_cents: int, limit_cents: int) -> float:
    if limit_cents <= 0:
        return 0.0
    return cost_cents / limit_cents * 100.0


@dataclass(slots=True)
class BudgetState:
    """Counter snapshot for one (month, provider) with its computed action."""

    month: date
    provider: str
    total_requests: int
    total_units_consumed: int
    estimated_cost_cents: int
    budget_limit_cents: int
    updated_at: datetime

    @property
    def percent_used(self) -> float:
        return percent_used(
            cost_cents=self.estimated_cost_cents,
            limit_cents=self.budget_limit_cents,
        )

    @property
    def remaining_cents(self) -> int:
        return self.budget_limit_cents - self.estimated_cost_cents

    @property
    def action(self) -> BudgetAction:
        return action_for(
            cost_cents=self.estimated_cost_cents,
            limit_cents=self.budget_limit_cents,
        )

    def crossed_thresholds(self) -> tuple[int, ...]:
        return tuple(
            threshold
            for threshold in ALERT_THRESHOLDS_PERCENT
            if self.budget_limit_cents > 0
            and self.estimated_cost_cents * 100 >= self.budget_limit_cents * threshold
        )


@dataclass(slots=True, frozen=True)
class BudgetDecision:
    """What an AI-cost caller should do right now."""

    provider: str
    action: BudgetAction
    batch_size: int
    defer_until: datetime | None

    @property
    def may_proceed(self) -> bool:
        return self.defer_until is None


@dataclass(slots=True)
class BudgetOverrideView:
    override_id: int
    month: date
    provider: str
    previous_limit_cents: int
    new_limit_cents: int
    reason: str
    actor: str | None
    created_at: datetime


@dataclass(slots=True)
class BudgetAlertView:
    month: date
    provider: str
    threshold_percent: int
    percent_used: float
    created_at: datetime
