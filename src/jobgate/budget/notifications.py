"""Threshold notification sinks for the budget gate."""

from __future__ import annotations

import logging
from typing import Protocol

from jobgate.budget.models import BudgetState

logger = logging.getLogger(__name__)


class BudgetNotifier(Protocol):
    def notify(self, state: BudgetState, threshold_percent: int) -> None: ...


class LoggingBudgetNotifier:
    """Default sink: one warning line per crossed threshold."""

    def notify(self, state: BudgetState, threshold_percent: int) -> None:
        logger.warning(
            "AI budget alert: provider=%s month=%s crossed %d%% "
            "(%.1f%% used, %d/%d cents, action=%s)",
            state.provider,
            state.month.isoformat(),
            threshold_percent,
            state.percent_used,
            state.estimated_cost_cents,
            state.budget_limit_cents,
            state.action.value,
        )
