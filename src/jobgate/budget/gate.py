"""Monthly provider-scoped cost gate with graduated degradation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from jobgate.budget.models import (
    DEFAULT_BUDGET_LIMIT_CENTS,
    DEFAULT_PROVIDER,
    BudgetAction,
    BudgetAlertView,
    BudgetDecision,
    BudgetOverrideView,
    BudgetState,
)
from jobgate.budget.notifications import BudgetNotifier, LoggingBudgetNotifier
from jobgate.budget.pricing import PricingTable
from jobgate.budget.repository import BudgetRepository
from jobgate.queue.errors import BudgetExceeded
from jobgate.storage.common import month_start, next_month_start, to_utc_aware, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BASE_BATCH_SIZE = 20
DEFAULT_HARD_STOP_RECHECK_SECONDS = 900.0


class BudgetGate:
    """Tracks spend per (UTC month, provider) and maps it to a `BudgetAction`.

    The month boundary is UTC midnight on the 1st. A month's counter is
    created on first reference; no rollover job is needed.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: BudgetRepository,
        *,
        default_provider: str = DEFAULT_PROVIDER,
        default_limit_cents: int = DEFAULT_BUDGET_LIMIT_CENTS,
        base_batch_size: int = DEFAULT_BASE_BATCH_SIZE,
        hard_stop_recheck_seconds: float = DEFAULT_HARD_STOP_RECHECK_SECONDS,
        pricing: PricingTable | None = None,
        notifier: BudgetNotifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.default_provider = default_provider
        self.default_limit_cents = default_limit_cents
        self.base_batch_size = base_batch_size
        self.hard_stop_recheck_seconds = hard_stop_recheck_seconds
        self.pricing = pricing or PricingTable()
        self.notifier: BudgetNotifier = notifier or LoggingBudgetNotifier()
        self._clock = clock

    def now(self) -> datetime:
        return to_utc_aware(self._clock())

    def current_month(self) -> date:
        return month_start(self.now())

    def next_cycle_start(self) -> datetime:
        return next_month_start(self.now())

    def report_usage(
        self,
        provider: str,
        units: int,
        cost_cents: int,
        *,
        requests: int = 1,
    ) -> BudgetState:
        """Atomically add usage to the current month's counter."""

        if units < 0 or cost_cents < 0 or requests < 0:
            raise ValueError("Usage values must be >= 0.")
        now = self.now()
        state = self.repository.increment(
            month=month_start(now),
            provider=provider,
            requests=requests,
            units=units,
            cost_cents=cost_cents,
            default_limit_cents=self.default_limit_cents,
            now=now,
        )
        logger.debug(
            "Recorded AI usage: provider=%s units=%d cost=%d total=%d/%d cents",
            provider,
            units,
            cost_cents,
            state.estimated_cost_cents,
            state.budget_limit_cents,
        )
        self._notify_thresholds(state)
        return state

    def report_tokens(
        self,
        provider: str,
        model: str,
        *,
        input_tokens: int,
        output_tokens: int = 0,
    ) -> BudgetState:
        """Price a call from token counts, then report it."""

        cost_cents = self.pricing.estimate_cost_cents(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        if cost_cents is None:
            logger.warning(
                "No AI pricing for provider=%s model=%s; cost counted as 0",
                provider,
                model,
            )
            cost_cents = 0
        return self.report_usage(provider, input_tokens + output_tokens, cost_cents)

    def state(self, provider: str | None = None) -> BudgetState:
        now = self.now()
        return self.repository.ensure_counter(
            month=month_start(now),
            provider=provider or self.default_provider,
            default_limit_cents=self.default_limit_cents,
            now=now,
        )

    def current_action(self, provider: str | None = None) -> BudgetAction:
        return self.state(provider).action

    def plan(
        self,
        provider: str | None = None,
        *,
        base_batch_size: int | None = None,
        critical: bool = False,
    ) -> BudgetDecision:
        """Batch size and deferral for the next unit of AI work.

        REDUCE halves the batch. QUEUE_NEXT_CYCLE defers non-critical work to
        the next month start. HARD_STOP defers everything, but only by
        `hard_stop_recheck_seconds` so a limit override resumes work without
        waiting for the month to roll over.
        """

        resolved = provider or self.default_provider
        base = self.base_batch_size if base_batch_size is None else base_batch_size
        action = self.current_action(resolved)
        defer_until: datetime | None = None
        if action == BudgetAction.NORMAL:
            batch_size = base
        elif action == BudgetAction.REDUCE:
            batch_size = max(1, base // 2) if base > 0 else 0
        elif action == BudgetAction.QUEUE_NEXT_CYCLE and critical:
            batch_size = max(1, base // 2) if base > 0 else 0
        elif action == BudgetAction.QUEUE_NEXT_CYCLE:
            batch_size = 0
            defer_until = self.next_cycle_start()
        else:
            batch_size = 0
            recheck_at = self.now() + timedelta(seconds=self.hard_stop_recheck_seconds)
            defer_until = min(recheck_at, self.next_cycle_start())
        return BudgetDecision(
            provider=resolved,
            action=action,
            batch_size=batch_size,
            defer_until=defer_until,
        )

    def require(self, provider: str | None = None, *, critical: bool = False) -> BudgetDecision:
        """Like `plan`, but raise `BudgetExceeded` when the work must wait."""

        decision = self.plan(provider, critical=critical)
        if not decision.may_proceed:
            raise BudgetExceeded(decision.provider, decision.action.value, decision.defer_until)
        return decision

    def raise_limit(
        self,
        provider: str,
        limit_cents: int,
        reason: str,
        *,
        actor: str | None = None,
    ) -> BudgetState:
        """Set this month's limit; the computed action changes immediately."""

        if limit_cents < 0:
            raise ValueError("limit_cents must be >= 0.")
        if not reason.strip():
            raise ValueError("A budget override needs a reason.")
        now = self.now()
        self.repository.ensure_counter(
            month=month_start(now),
            provider=provider,
            default_limit_cents=self.default_limit_cents,
            now=now,
        )
        previous_limit, state = self.repository.set_limit(
            month=month_start(now),
            provider=provider,
            limit_cents=limit_cents,
            reason=reason.strip(),
            actor=actor,
            now=now,
        )
        logger.info(
            "Budget override: provider=%s month=%s limit %d -> %d cents by %s (%s); action=%s",
            provider,
            state.month.isoformat(),
            previous_limit,
            limit_cents,
            actor or "unknown",
            reason.strip(),
            state.action.value,
        )
        self._notify_thresholds(state)
        return state

    def history(self, provider: str | None = None, *, months: int = 12) -> list[BudgetState]:
        current = self.current_month()
        year, month = current.year, current.month - (max(1, months) - 1)
        while month <= 0:
            month += 12
            year -= 1
        return self.repository.history(
            provider=provider or self.default_provider,
            since_month=date(year, month, 1),
        )

    def overrides(self, provider: str | None = None) -> list[BudgetOverrideView]:
        return self.repository.list_overrides(provider=provider or self.default_provider)

    def alerts(self, provider: str | None = None) -> list[BudgetAlertView]:
        return self.repository.list_alerts(provider=provider or self.default_provider)

    def _notify_thresholds(self, state: BudgetState) -> None:
        for threshold in state.crossed_thresholds():
            try:
                first_time = self.repository.record_alert(
                    month=state.month,
                    provider=state.provider,
                    threshold_percent=threshold,
                    percent_used=state.percent_used,
                    now=self.now(),
                )
            except SQLAlchemyError:
                logger.exception(
                    "Failed to record budget alert: provider=%s threshold=%d",
                    state.provider,
                    threshold,
                )
                continue
            if not first_time:
                continue
            try:
                self.notifier.notify(state, threshold)
            except Exception:
                logger.exception(
                    "Budget notifier failed: provider=%s threshold=%d",
                    state.provider,
                    threshold,
                )
