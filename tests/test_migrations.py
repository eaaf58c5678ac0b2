from pathlib import Path

import allure
import pytest
from sqlalchemy import text

import jobgate
from jobgate.queue.repository import JobStore
from jobgate.storage.alembic_runner import MIGRATIONS_DIR

pytestmark = [
    allure.epic("Platform"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
        assert list(version) == ["20261005_0003"]

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """
            )
        ).scalars()
        assert list(tables) == [
            "budget_alerts",
            "budget_counters",
            "budget_overrides",
            "job_events",
            "jobs",
            "queue_states",
            "rate_limit_rules",
            "rate_limit_violations",
            "rate_limit_windows",
        ]

        seeded = connection.execute(
            text(
                "SELECT limit_count, window_seconds FROM rate_limit_rules "
                "WHERE action_type = 'vote' AND tier = 'logged_in'"
            )
        ).one()
        assert tuple(seeded) == (100, 3600)

        live_key_index = connection.execute(
            text(
                "SELECT sql FROM sqlite_master "
                "WHERE type = 'index' AND name = 'uq_jobs_idempotency_key_live'"
            )
        ).scalar_one()
        assert "state != 'dead'" in live_key_index
    store.close()


def test_migrations_ship_inside_the_package() -> None:
    package_dir = Path(jobgate.__file__).resolve().parent

    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert (MIGRATIONS_DIR / "script.py.mako").is_file()
    assert sorted(path.name for path in (MIGRATIONS_DIR / "versions").glob("*.py")) == [
        "20261005_0001_job_store.py",
        "20261005_0002_rate_limits.py",
        "20261005_0003_budget_counters.py",
    ]


def test_schema_upgrade_does_not_depend_on_working_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    store = JobStore(tmp_path / "anywhere.db")

    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    assert version == "20261005_0003"
    assert not (elsewhere / "alembic.ini").exists()
    store.close()
