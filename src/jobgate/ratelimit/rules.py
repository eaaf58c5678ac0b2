"""Immutable rule snapshot with interval refresh."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from types import MappingProxyType

from jobgate.ratelimit.models import RateLimitRuleView, Tier
from jobgate.ratelimit.repository import RateLimitRepository

logger = logging.getLogger(__name__)

RuleKey = tuple[str, Tier]


class RuleBook:
    """Holds a read-only `(action_type, tier) -> rule` snapshot.

    The snapshot is reloaded from the repository at most every
    `refresh_seconds`, or on the next lookup after `invalidate()`.
    """

    def __init__(
        self,
        repository: RateLimitRepository,
        *,
        refresh_seconds: float = 600.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.refresh_seconds = refresh_seconds
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._snapshot: Mapping[RuleKey, RateLimitRuleView] = MappingProxyType({})
        self._loaded_at: float | None = None

    def get(self, action_type: str, tier: Tier) -> RateLimitRuleView | None:
        return self.snapshot().get((action_type, tier))

    def snapshot(self) -> Mapping[RuleKey, RateLimitRuleView]:
        with self._lock:
            if self._is_stale():
                self._reload()
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._loaded_at = None

    def refresh(self) -> None:
        with self._lock:
            self._reload()

    def _is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return self._monotonic() - self._loaded_at >= self.refresh_seconds

    def _reload(self) -> None:
        rules = self.repository.list_rules()
        self._snapshot = MappingProxyType({(rule.action_type, rule.tier): rule for rule in rules})
        self._loaded_at = self._monotonic()
        logger.debug("Loaded %d rate limit rule(s)", len(rules))
