"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from jobgate.queue.handlers import HandlerRegistry
from jobgate.queue.repository import JobStore


class FakeClock:
    """Settable UTC clock for time-dependent components."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=UTC))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobgate.db"


@pytest.fixture()
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture()
def store(db_path: Path, registry: HandlerRegistry) -> Iterator[JobStore]:
    job_store = JobStore(db_path, policy_resolver=registry.policy_for)
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def clocked_store(db_path: Path, clock: FakeClock) -> Iterator[JobStore]:
    job_store = JobStore(db_path, clock=clock)
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Strip JOBGATE_* variables so settings come from defaults."""

    for name in list(os.environ):
        if name.startswith("JOBGATE_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
