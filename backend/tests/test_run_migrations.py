from __future__ import annotations

import json
import types

import pytest
from alembic.config import Config
from pydantic import ValidationError
from sqlalchemy import create_engine, inspect, text

from scripts import run_migrations as runner


def _load_test_config(monkeypatch, url: str = "sqlite://") -> Config:
    monkeypatch.setenv("STUDY_CALENDAR_DATABASE_URL", url)
    return runner.get_alembic_config(str(runner.BACKEND_ROOT / "alembic.ini"))


def test_resolve_database_url_prefers_env(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)
    assert config.get_main_option("sqlalchemy.url") == runner.URL_PLACEHOLDER
    assert runner.resolve_database_url(config) == "sqlite://"
    assert config.get_main_option("sqlalchemy.url") == "sqlite://"


def test_resolve_database_url_requires_configuration(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)
    monkeypatch.delenv("STUDY_CALENDAR_DATABASE_URL")
    with pytest.raises(RuntimeError):
        runner.resolve_database_url(config)


def test_wait_for_database_succeeds_with_sqlite(tmp_path) -> None:
    db_path = tmp_path / "test.sqlite"
    url = f"sqlite:///{db_path}"
    runner.wait_for_database(url, timeout=2, poll_interval=0.1)


def test_wait_for_database_times_out(monkeypatch) -> None:
    attempts: list[int] = []

    class DummyEngine:
        def connect(self) -> types.SimpleNamespace:
            attempts.append(1)
            raise runner.OperationalError("SELECT 1", {}, Exception("boom"))

        def dispose(self) -> None:
            pass

    monkeypatch.setattr(runner, "create_engine", lambda *_, **__: DummyEngine())
    with pytest.raises(RuntimeError):
        runner.wait_for_database("postgresql://example", timeout=0, poll_interval=0)
    assert len(attempts) == 1


def test_run_migrations_invokes_upgrade(monkeypatch) -> None:
    config = _load_test_config(monkeypatch)

    recorded: dict[str, object] = {}

    def fake_wait(url: str, *, timeout: int, poll_interval: float) -> None:
        recorded["wait"] = (url, timeout, poll_interval)

    def fake_upgrade(cfg, revision: str) -> None:
        recorded["revision"] = revision
        recorded["config_script_location"] = cfg.get_main_option("script_location")

    monkeypatch.setattr(runner, "wait_for_database", fake_wait)
    monkeypatch.setattr(runner.command, "upgrade", fake_upgrade)
    monkeypatch.setattr(runner, "verify_schema", lambda cfg, url: recorded.setdefault("verified", url))

    runner.run_migrations("head", timeout=5, poll_interval=0.1, config=config)

    assert recorded["revision"] == "head"
    assert recorded["wait"] == ("sqlite://", 5, 0.1)
    assert str(recorded["config_script_location"]).endswith("alembic")
    assert recorded["verified"] == "sqlite://"


def test_upgrade_builds_calendar_schema(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    config = _load_test_config(monkeypatch, url)

    runner.run_migrations("head", timeout=2, poll_interval=0.1, config=config)

    engine = create_engine(url, future=True)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {
        "calendar_events",
        "student_calendars",
        "schedule_preferences",
        "learning_units",
        "calendar_audit_events",
        "study_sessions",
    } <= tables
    assert runner.verify_schema(config, url) == "20261019_02_study_sessions"


def test_main_reports_failure(monkeypatch) -> None:
    monkeypatch.delenv("STUDY_CALENDAR_DATABASE_URL", raising=False)
    assert runner.main(["--timeout", "0"]) == 1


def test_verify_schema_flags_partial_upgrade(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'partial.db'}"
    config = _load_test_config(monkeypatch, url)

    runner.run_migrations("20261019_01_calendar_schema", timeout=2, poll_interval=0.1, config=config)

    with pytest.raises(RuntimeError) as excinfo:
        runner.verify_schema(config, url)
    message = str(excinfo.value)
    assert "20261019_01_calendar_schema" in message
    assert "study_sessions" in message


def test_wait_for_database_retries_until_reachable(monkeypatch) -> None:
    attempts: list[int] = []

    class FlakyEngine:
        def connect(self):
            attempts.append(1)
            if len(attempts) < 3:
                raise runner.OperationalError("SELECT 1", {}, Exception("starting"))
            return create_engine("sqlite://", future=True).connect()

        def dispose(self) -> None:
            pass

    monkeypatch.setattr(runner, "create_engine", lambda *_, **__: FlakyEngine())
    monkeypatch.setattr(runner.time, "sleep", lambda _: None)
    runner.wait_for_database("postgresql://example", timeout=30, poll_interval=0)
    assert len(attempts) == 3


def test_seed_units_loads_catalog_after_upgrade(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'seeded.db'}"
    config = _load_test_config(monkeypatch, url)
    seed = tmp_path / "units.json"
    seed.write_text(
        json.dumps(
            [
                {"unit_id": "u2", "course_id": "algebra", "sequence_position": 1, "duration_minutes": 45},
                {"unit_id": "u1", "course_id": "algebra", "sequence_position": 0, "duration_minutes": 30},
                {"unit_id": "g1", "course_id": "geometry", "sequence_position": 0, "duration_minutes": 60},
            ]
        ),
        encoding="utf-8",
    )

    seeded = runner.run_migrations("head", timeout=2, poll_interval=0.1, config=config, seed_units=seed)
    # A second run replaces rather than duplicates.
    runner.run_migrations("head", timeout=2, poll_interval=0.1, config=config, seed_units=seed)

    assert seeded == {"algebra": 2, "geometry": 1}
    engine = create_engine(url, future=True)
    try:
        with engine.connect() as connection:
            rows = connection.execute(
                text("SELECT course_id, unit_id FROM learning_units ORDER BY course_id, sequence_position")
            ).all()
    finally:
        engine.dispose()
    assert [tuple(row) for row in rows] == [("algebra", "u1"), ("algebra", "u2"), ("geometry", "g1")]


def test_invalid_seed_file_fails_before_upgrade(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'untouched.db'}"
    config = _load_test_config(monkeypatch, url)
    seed = tmp_path / "units.json"
    seed.write_text(json.dumps([{"unit_id": "u1", "course_id": "algebra", "duration_minutes": 0}]), encoding="utf-8")
    upgrades: list[str] = []
    monkeypatch.setattr(runner.command, "upgrade", lambda cfg, revision: upgrades.append(revision))

    with pytest.raises(ValidationError):
        runner.run_migrations("head", timeout=2, poll_interval=0.1, config=config, seed_units=seed)
    assert upgrades == []
