from __future__ import annotations

import logging

from study_calendar.logging_config import configure_logging, parse_logger_levels


def test_parse_logger_levels_skips_malformed_pairs() -> None:
    parsed = parse_logger_levels("study_calendar=debug, sqlalchemy.engine = INFO,broken,x=LOUD,=WARNING")
    assert parsed == {"study_calendar": "DEBUG", "sqlalchemy.engine": "INFO"}


def test_configure_logging_applies_overrides(monkeypatch) -> None:
    monkeypatch.setenv("STUDY_CALENDAR_LOG_LEVEL", "warning")
    monkeypatch.setenv("STUDY_CALENDAR_DEBUG_SQL", "1")
    monkeypatch.setenv("STUDY_CALENDAR_LOG_LEVELS", "study_calendar.telemetry=ERROR")

    configure_logging()

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.INFO
    assert logging.getLogger("sqlalchemy.pool").level == logging.WARNING
    assert logging.getLogger("study_calendar.telemetry").level == logging.ERROR

    monkeypatch.undo()
    configure_logging()
    logging.getLogger("study_calendar.telemetry").setLevel(logging.NOTSET)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.NOTSET)
