"""Window counter stores: shared SQLite table or in-process memory."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import case, delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from jobgate.ratelimit.models import WindowHit
from jobgate.storage.common import to_db_datetime, to_utc_aware
from jobgate.storage.sqlmodel_models import RateLimitWindow


class WindowStore(Protocol):
    """Atomic reset-or-increment counter keyed by (identity_key, action_type)."""

    def hit(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit: ...

    def peek(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit | None: ...

    def evict_expired(self, *, now: datetime) -> int: ...


class SqliteWindowStore:
    """Counters shared by every process using the same database file.

    One upsert statement restarts a lapsed window or increments the live
    one, so concurrent checks never observe a check-then-increment gap.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def hit(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit:
        window = timedelta(seconds=window_seconds)
        lapsed = col(RateLimitWindow.window_start) <= to_db_datetime(now - window)
        statement = sqlite_insert(RateLimitWindow).values(
            identity_key=identity_key,
            action_type=action_type,
            window_start=to_db_datetime(now),
            window_seconds=window_seconds,
            count=1,
            expires_at=to_db_datetime(now + window),
        )
        statement = statement.on_conflict_do_update(
            index_elements=["identity_key", "action_type"],
            set_={
                "count": case((lapsed, 1), else_=col(RateLimitWindow.count) + 1),
                "window_start": case(
                    (lapsed, statement.excluded.window_start),
                    else_=col(RateLimitWindow.window_start),
                ),
                "expires_at": case(
                    (lapsed, statement.excluded.expires_at),
                    else_=col(RateLimitWindow.expires_at),
                ),
                "window_seconds": statement.excluded.window_seconds,
            },
        ).returning(col(RateLimitWindow.count), col(RateLimitWindow.window_start))

        with Session(self.engine) as session:
            count, window_start = session.exec(statement).one()
            session.commit()
        return WindowHit(count=int(count), window_start=to_utc_aware(window_start))

    def peek(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitWindow).where(
                    RateLimitWindow.identity_key == identity_key,
                    RateLimitWindow.action_type == action_type,
                ),
            ).one_or_none()
            if row is None:
                return None
            window_start = to_utc_aware(row.window_start)
            if window_start <= now - timedelta(seconds=window_seconds):
                return None
            return WindowHit(count=row.count, window_start=window_start)

    def evict_expired(self, *, now: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(RateLimitWindow).where(
                    col(RateLimitWindow.expires_at) <= to_db_datetime(now),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)


class InMemoryWindowStore:
    """Per-process counters; lost on restart and not shared across replicas."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[tuple[str, str], tuple[datetime, int, int]] = {}

    def hit(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit:
        key = (identity_key, action_type)
        with self._lock:
            current = self._windows.get(key)
            if current is None or current[0] <= now - timedelta(seconds=window_seconds):
                window_start, count = now, 1
            else:
                window_start, count = current[0], current[1] + 1
            self._windows[key] = (window_start, count, window_seconds)
        return WindowHit(count=count, window_start=window_start)

    def peek(
        self,
        *,
        identity_key: str,
        action_type: str,
        window_seconds: int,
        now: datetime,
    ) -> WindowHit | None:
        with self._lock:
            current = self._windows.get((identity_key, action_type))
        if current is None or current[0] <= now - timedelta(seconds=window_seconds):
            return None
        return WindowHit(count=current[1], window_start=current[0])

    def evict_expired(self, *, now: datetime) -> int:
        with self._lock:
            expired = [
                key
                for key, (window_start, _, window_seconds) in self._windows.items()
                if window_start + timedelta(seconds=window_seconds) <= now
            ]
            for key in expired:
                del self._windows[key]
        return len(expired)
