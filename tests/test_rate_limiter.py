from __future__ import annotations

import threading

import allure
import pytest

from jobgate.queue.repository import JobStore
from jobgate.ratelimit.limiter import RateLimiter
from jobgate.ratelimit.models import UNLIMITED, Tier, build_identity_key
from jobgate.ratelimit.repository import RateLimitRepository
from jobgate.ratelimit.rules import RuleBook
from jobgate.ratelimit.windows import InMemoryWindowStore, SqliteWindowStore, WindowStore

pytestmark = [
    allure.epic("Admission Control"),
    allure.feature("Rate Limiting"),
]


def _limiter(
    store: JobStore,
    clock,
    *,
    windows: WindowStore | None = None,
    fail_open: bool = True,
) -> RateLimiter:
    repository = RateLimitRepository(store.engine)
    return RateLimiter(
        rules=RuleBook(repository),
        windows=windows or SqliteWindowStore(store.engine),
        repository=repository,
        fail_open=fail_open,
        clock=clock,
    )


def test_fixed_window_counts_down_then_denies(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=5, window_seconds=60)

    decisions = [limiter.check_limit("u:42", "vote", Tier.LOGGED_IN) for _ in range(6)]

    assert [decision.allowed for decision in decisions] == [True] * 5 + [False]
    assert [decision.remaining for decision in decisions] == [4, 3, 2, 1, 0, 0]
    assert decisions[-1].retry_after_seconds == 60
    assert all(decision.retry_after_seconds is None for decision in decisions[:5])
    assert decisions[-1].window_seconds == 60


def test_window_resets_after_it_lapses(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=2, window_seconds=60)
    for _ in range(3):
        limiter.check_limit("u:42", "vote", Tier.LOGGED_IN)

    clock.advance(59)
    assert limiter.check_limit("u:42", "vote", Tier.LOGGED_IN).allowed is False

    clock.advance(1)
    decision = limiter.check_limit("u:42", "vote", Tier.LOGGED_IN)
    assert decision.allowed is True
    assert decision.remaining == 1
    assert decision.window_started_at == clock()


def test_identities_and_actions_are_counted_separately(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=1, window_seconds=60)
    limiter.update_rule(
        action_type="contact",
        tier=Tier.LOGGED_IN,
        limit_count=1,
        window_seconds=60,
    )

    assert limiter.check_limit("u:1", "vote", Tier.LOGGED_IN).allowed is True
    assert limiter.check_limit("u:2", "vote", Tier.LOGGED_IN).allowed is True
    assert limiter.check_limit("u:1", "contact", Tier.LOGGED_IN).allowed is True
    assert limiter.check_limit("u:1", "vote", Tier.LOGGED_IN).allowed is False


def test_denials_are_recorded_as_violations(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(
        action_type="search",
        tier=Tier.ANONYMOUS,
        limit_count=1,
        window_seconds=60,
    )

    limiter.check_limit("ip:10.0.0.1", "search", Tier.ANONYMOUS, endpoint="/search")
    limiter.check_limit("ip:10.0.0.1", "search", Tier.ANONYMOUS, endpoint="/search")
    limiter.check_limit("ip:10.0.0.1", "search", Tier.ANONYMOUS, endpoint="/search")

    violations = limiter.list_violations(identity_key="ip:10.0.0.1")
    assert [violation.violation_count for violation in violations] == [2, 1]
    assert violations[0].endpoint == "/search"
    assert violations[0].tier == Tier.ANONYMOUS
    assert limiter.list_violations(action_type="vote") == []


def test_missing_rule_fails_open_by_default(store: JobStore, clock) -> None:
    decision = _limiter(store, clock).check_limit("u:1", "teleport", Tier.TRUSTED)

    assert decision.allowed is True
    assert decision.rule_found is False
    assert decision.remaining == UNLIMITED


def test_missing_rule_can_fail_closed(store: JobStore, clock) -> None:
    decision = _limiter(store, clock, fail_open=False).check_limit("u:1", "teleport", Tier.TRUSTED)

    assert decision.allowed is False
    assert decision.retry_after_seconds is not None


def test_seeded_rules_cover_platform_actions(store: JobStore, clock) -> None:
    rules = {(rule.action_type, rule.tier): rule for rule in _limiter(store, clock).list_rules()}

    assert rules[("vote", Tier.LOGGED_IN)].limit_count == 100
    assert rules[("login", Tier.ANONYMOUS)].window_seconds == 900
    assert ("vote", Tier.ANONYMOUS) not in rules


def test_rule_book_serves_snapshot_until_refresh(store: JobStore, clock) -> None:
    ticks = [0.0]
    repository = RateLimitRepository(store.engine)
    rules = RuleBook(repository, refresh_seconds=600, monotonic=lambda: ticks[0])
    assert rules.get("vote", Tier.LOGGED_IN).limit_count == 100

    repository.upsert_rule(
        action_type="vote",
        tier=Tier.LOGGED_IN,
        limit_count=7,
        window_seconds=60,
        updated_by="ops",
        now=clock(),
    )
    assert rules.get("vote", Tier.LOGGED_IN).limit_count == 100

    ticks[0] = 600.0
    assert rules.get("vote", Tier.LOGGED_IN).limit_count == 7


def test_update_rule_rejects_non_positive_values(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)

    with pytest.raises(ValueError, match="limit_count"):
        limiter.update_rule(
            action_type="vote",
            tier=Tier.TRUSTED,
            limit_count=0,
            window_seconds=60,
        )
    with pytest.raises(ValueError, match="window_seconds"):
        limiter.update_rule(action_type="vote", tier=Tier.TRUSTED, limit_count=1, window_seconds=0)


def test_remaining_attempts_does_not_count(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=3, window_seconds=60)
    limiter.check_limit("u:5", "vote", Tier.LOGGED_IN)

    assert limiter.remaining_attempts("u:5", "vote", Tier.LOGGED_IN) == 2
    assert limiter.remaining_attempts("u:5", "vote", Tier.LOGGED_IN) == 2
    assert limiter.remaining_attempts("u:5", "teleport", Tier.LOGGED_IN) is None


def test_memory_window_store_matches_sqlite_semantics(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock, windows=InMemoryWindowStore())
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=2, window_seconds=30)

    results = [limiter.check_limit("s:abc", "vote", Tier.LOGGED_IN).allowed for _ in range(3)]
    clock.advance(30)

    assert results == [True, True, False]
    assert limiter.check_limit("s:abc", "vote", Tier.LOGGED_IN).remaining == 1
    clock.advance(31)
    assert limiter.evict_expired() == 1


def test_sqlite_windows_evict_expired(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.LOGGED_IN, limit_count=2, window_seconds=30)
    limiter.check_limit("u:1", "vote", Tier.LOGGED_IN)
    limiter.check_limit("u:2", "vote", Tier.LOGGED_IN)

    assert limiter.evict_expired() == 0
    clock.advance(30)
    assert limiter.evict_expired() == 2


def test_concurrent_checks_never_overshoot_limit(store: JobStore, clock) -> None:
    limiter = _limiter(store, clock)
    limiter.update_rule(action_type="vote", tier=Tier.TRUSTED, limit_count=20, window_seconds=60)
    allowed: list[bool] = []
    lock = threading.Lock()

    def _hammer() -> None:
        for _ in range(5):
            decision = limiter.check_limit("u:9", "vote", Tier.TRUSTED)
            with lock:
                allowed.append(decision.allowed)

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(allowed) == 40
    assert allowed.count(True) == 20


def test_tier_and_identity_helpers() -> None:
    assert Tier.for_actor(user_id=None) == Tier.ANONYMOUS
    assert Tier.for_actor(user_id=7, karma=3) == Tier.LOGGED_IN
    assert Tier.for_actor(user_id=7, karma=10) == Tier.TRUSTED
    assert build_identity_key(user_id=7, ip_address="10.0.0.1") == "u:7"
    assert build_identity_key(session_id="abc", ip_address="10.0.0.1") == "s:abc"
    assert build_identity_key(ip_address="10.0.0.1") == "ip:10.0.0.1"
    with pytest.raises(ValueError):
        build_identity_key()
