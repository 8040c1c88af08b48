from __future__ import annotations

import json

from sqlalchemy import create_engine, text

from scripts import db_metrics
from study_calendar.config import get_settings
from study_calendar.db import monitoring
from study_calendar.db.session import dispose_engine


def test_instrument_engine_emits_telemetry(monkeypatch) -> None:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "_EMIT_INTERVAL", 0)
    monkeypatch.setattr(monitoring, "emit_event", record)

    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        monitoring.instrument_engine(engine)
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        assert emitted, "Expected telemetry emission when instrumentation is active."
        event_name, payload = emitted[0]
        assert event_name == "db_pool_status"
        assert payload["connects"] >= 1
        assert {entry["trigger"] for _, entry in emitted} <= {"connect", "checkout"}
    finally:
        monitoring.forget_engine(engine)
        engine.dispose()


def test_pool_snapshot_tracks_checkins(monkeypatch) -> None:
    monkeypatch.setattr(monitoring, "emit_event", lambda *args, **kwargs: None)
    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        monitoring.instrument_engine(engine)
        monitoring.instrument_engine(engine)
        for _ in range(2):
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))

        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["checkouts"] == 2
        assert snapshot["checkins"] == 2
        assert isinstance(snapshot["status"], str)

        monitoring.forget_engine(engine)
        assert monitoring.get_pool_snapshot(engine)["checkouts"] == 0
    finally:
        engine.dispose()


def test_db_metrics_script_prints_pool_snapshot(monkeypatch, capsys) -> None:
    monkeypatch.setenv("STUDY_CALENDAR_DATABASE_URL", "sqlite://")
    get_settings.cache_clear()
    dispose_engine()
    try:
        assert db_metrics.main() == 0
    finally:
        dispose_engine()
        get_settings.cache_clear()

    payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert payload["pool"]["checkouts"] >= 1
    assert "timestamp" in payload
