"""Admission check: fixed window anchored at the key's first hit."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from jobgate.ratelimit.models import (
    FAIL_OPEN_WINDOW_SECONDS,
    UNLIMITED,
    RateLimitDecision,
    RateLimitRuleView,
    RateLimitViolationView,
    Tier,
    WindowHit,
)
from jobgate.ratelimit.repository import RateLimitRepository
from jobgate.ratelimit.rules import RuleBook
from jobgate.ratelimit.windows import WindowStore
from jobgate.storage.common import to_utc_aware, utc_now

logger = logging.getLogger(__name__)


class RateLimiter:
    """Gates actions per (identity, action, tier).

    Every check counts, including denied ones, so a caller hammering a
    denied action keeps its window saturated until the window lapses.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        rules: RuleBook,
        windows: WindowStore,
        repository: RateLimitRepository,
        fail_open: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.rules = rules
        self.windows = windows
        self.repository = repository
        self.fail_open = fail_open
        self._clock = clock

    def check_limit(
        self,
        identity_key: str,
        action_type: str,
        tier: Tier,
        endpoint: str | None = None,
    ) -> RateLimitDecision:
        """Count one attempt and decide whether the guarded action may proceed."""

        rule = self.rules.get(action_type, tier)
        if rule is None:
            return self._missing_rule_decision(action_type=action_type, tier=tier)

        now = to_utc_aware(self._clock())
        hit = self.windows.hit(
            identity_key=identity_key,
            action_type=action_type,
            window_seconds=rule.window_seconds,
            now=now,
        )
        remaining = max(0, rule.limit_count - hit.count)
        if hit.count <= rule.limit_count:
            return RateLimitDecision(
                allowed=True,
                remaining=remaining,
                window_seconds=rule.window_seconds,
                limit_count=rule.limit_count,
                count=hit.count,
                window_started_at=hit.window_start,
            )

        logger.warning(
            "Rate limit exceeded: action=%s tier=%s identity=%s count=%d limit=%d",
            action_type,
            tier.value,
            identity_key,
            hit.count,
            rule.limit_count,
        )
        self._record_violation(
            identity_key=identity_key,
            rule=rule,
            endpoint=endpoint,
            hit=hit,
            now=now,
        )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            window_seconds=rule.window_seconds,
            limit_count=rule.limit_count,
            retry_after_seconds=rule.window_seconds,
            count=hit.count,
            window_started_at=hit.window_start,
        )

    def remaining_attempts(self, identity_key: str, action_type: str, tier: Tier) -> int | None:
        """Remaining allowance without counting an attempt; None when no rule applies."""

        rule = self.rules.get(action_type, tier)
        if rule is None:
            return None
        hit = self.windows.peek(
            identity_key=identity_key,
            action_type=action_type,
            window_seconds=rule.window_seconds,
            now=to_utc_aware(self._clock()),
        )
        used = hit.count if hit is not None else 0
        return max(0, rule.limit_count - used)

    def list_rules(self) -> list[RateLimitRuleView]:
        return self.repository.list_rules()

    def update_rule(
        self,
        *,
        action_type: str,
        tier: Tier,
        limit_count: int,
        window_seconds: int,
        updated_by: str | None = None,
    ) -> RateLimitRuleView:
        rule = self.repository.upsert_rule(
            action_type=action_type,
            tier=tier,
            limit_count=limit_count,
            window_seconds=window_seconds,
            updated_by=updated_by,
            now=to_utc_aware(self._clock()),
        )
        self.rules.invalidate()
        logger.info(
            "Updated rate limit rule: action=%s tier=%s limit=%d window=%ds by=%s",
            action_type,
            tier.value,
            limit_count,
            window_seconds,
            updated_by or "unknown",
        )
        return rule

    def evict_expired(self) -> int:
        return self.windows.evict_expired(now=to_utc_aware(self._clock()))

    def list_violations(
        self,
        *,
        identity_key: str | None = None,
        action_type: str | None = None,
        limit: int = 50,
    ) -> list[RateLimitViolationView]:
        return self.repository.list_violations(
            identity_key=identity_key,
            action_type=action_type,
            limit=limit,
        )

    def _missing_rule_decision(self, *, action_type: str, tier: Tier) -> RateLimitDecision:
        if self.fail_open:
            logger.warning(
                "No rate limit rule for action=%s tier=%s, allowing request (fail-open)",
                action_type,
                tier.value,
            )
            return RateLimitDecision(
                allowed=True,
                remaining=UNLIMITED,
                window_seconds=FAIL_OPEN_WINDOW_SECONDS,
                limit_count=UNLIMITED,
                rule_found=False,
            )
        logger.warning(
            "No rate limit rule for action=%s tier=%s, denying request (fail-closed)",
            action_type,
            tier.value,
        )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            window_seconds=FAIL_OPEN_WINDOW_SECONDS,
            limit_count=0,
            retry_after_seconds=FAIL_OPEN_WINDOW_SECONDS,
            rule_found=False,
        )

    def _record_violation(
        self,
        *,
        identity_key: str,
        rule: RateLimitRuleView,
        endpoint: str | None,
        hit: WindowHit,
        now: datetime,
    ) -> None:
        try:
            self.repository.record_violation(
                identity_key=identity_key,
                action_type=rule.action_type,
                tier=rule.tier,
                endpoint=endpoint,
                violation_count=hit.count - rule.limit_count,
                window_started_at=hit.window_start,
                violated_at=now,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record rate limit violation: identity=%s action=%s",
                identity_key,
                rule.action_type,
            )
