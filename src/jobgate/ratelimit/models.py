"""Domain models for admission rate limiting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

TRUSTED_KARMA_THRESHOLD = 10

# Limit reported when no rule exists for an (action, tier) pair and the limiter fails open.
UNLIMITED = 2**31 - 1
FAIL_OPEN_WINDOW_SECONDS = 3600


class Tier(str, Enum):
    """Caller trust classification used to select thresholds."""

    ANONYMOUS = "anonymous"
    LOGGED_IN = "logged_in"
    TRUSTED = "trusted"

    @classmethod
    def from_karma(cls, karma: int) -> Tier:
        if karma >= TRUSTED_KARMA_THRESHOLD:
            return cls.TRUSTED
        return cls.LOGGED_IN

    @classmethod
    def for_actor(cls, *, user_id: str | int | None, karma: int = 0) -> Tier:
        if user_id is None:
            return cls.ANONYMOUS
        return cls.from_karma(karma)


@dataclass(slots=True, frozen=True)
class RateLimitRuleView:
    action_type: str
    tier: Tier
    limit_count: int
    window_seconds: int
    updated_by: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class WindowHit:
    """Counter state of one (identity, action) window after a hit or peek."""

    count: int
    window_start: datetime


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    """Admission outcome; on denial callers answer with Retry-After = retry_after_seconds."""

    allowed: bool
    remaining: int
    window_seconds: int
    limit_count: int
    retry_after_seconds: int | None = None
    count: int = 0
    window_started_at: datetime | None = None
    rule_found: bool = True


@dataclass(slots=True)
class RateLimitViolationView:
    violation_id: int
    identity_key: str
    action_type: str
    tier: Tier
    endpoint: str | None
    violation_count: int
    window_started_at: datetime
    violated_at: datetime


def build_identity_key(
    *,
    user_id: str | int | None = None,
    ip_address: str | None = None,
    session_id: str | None = None,
) -> str:
    """Compose the counter subject: user id first, then session, then client IP."""

    if user_id is not None and str(user_id).strip():
        return f"u:{str(user_id).strip()}"
    if session_id is not None and session_id.strip():
        return f"s:{session_id.strip()}"
    if ip_address is not None and ip_address.strip():
        return f"ip:{ip_address.strip()}"
    raise ValueError("An identity key needs a user id, session id or IP address.")
