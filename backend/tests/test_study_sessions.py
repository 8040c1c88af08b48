from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from study_calendar.calendar_store import CalendarStore
from study_calendar.catalog import InMemoryContentCatalog
from study_calendar.config import get_settings
from study_calendar.db.session import create_schema, dispose_engine
from study_calendar.engine import CalendarEngine
from study_calendar.errors import AlreadyCompleted, InvalidDuration, NotFound
from study_calendar.models import CalendarEvent, LearningUnit
from study_calendar.telemetry import capture_events

NOW = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)
STUDENT = "stu-sessions"


def _engine(tmp_path: Path) -> CalendarEngine:
    os.environ["STUDY_CALENDAR_DATABASE_URL"] = f"sqlite:///{tmp_path / 'sessions.db'}"
    get_settings.cache_clear()
    dispose_engine()
    create_schema()
    units = [
        LearningUnit(unit_id=f"u{index}", course_id="course-a", sequence_position=index, duration_minutes=60)
        for index in range(4)
    ]
    return CalendarEngine(catalog=InMemoryContentCatalog(units), store=CalendarStore(clock=lambda: NOW))


def _generate(engine: CalendarEngine, student_id: str = STUDENT) -> List[CalendarEvent]:
    return engine.generate(
        {
            "student_id": student_id,
            "course_id": "course-a",
            "available_hours_per_week": 5,
            "target_completion_weeks": 4,
        },
        now=NOW,
    ).events


def test_ending_a_session_completes_its_event(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    version = engine.store.current_version(STUDENT)
    started_at = event.scheduled_at

    started = engine.start_session(STUDENT, event.event_id, started_at=started_at, notes="chapter 1")
    assert started.is_open
    assert engine.store.current_version(STUDENT) == version

    result = engine.end_session(started.session_id, ended_at=started_at + timedelta(minutes=47, seconds=40))

    assert result.session.duration_minutes == 47
    assert result.session.completed is True
    assert result.session.notes == "chapter 1"
    assert result.event is not None
    assert result.event.completed is True
    assert result.event.actual_minutes == 47
    assert result.event.completed_at == started_at + timedelta(minutes=47, seconds=40)
    assert engine.store.current_version(STUDENT) == version + 1
    audit = engine.store.recent_audit_events(STUDENT)[0]
    assert audit["event_type"] == "event_completed"
    assert audit["payload"]["session_id"] == started.session_id


def test_session_can_only_end_once(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    started = engine.start_session(STUDENT, event.event_id, started_at=NOW)
    engine.end_session(started.session_id, ended_at=NOW + timedelta(minutes=30))

    with pytest.raises(AlreadyCompleted):
        engine.end_session(started.session_id, ended_at=NOW + timedelta(minutes=40))


def test_session_cannot_end_before_it_starts(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    started = engine.start_session(STUDENT, started_at=NOW)

    with pytest.raises(InvalidDuration):
        engine.end_session(started.session_id, ended_at=NOW - timedelta(minutes=1))
    assert engine.sessions(STUDENT)[0].is_open


def test_abandoned_session_leaves_event_pending(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    version = engine.store.current_version(STUDENT)
    started = engine.start_session(STUDENT, event.event_id, started_at=NOW)

    result = engine.end_session(started.session_id, completed=False, ended_at=NOW + timedelta(minutes=25))

    assert result.event is None
    assert result.session.duration_minutes == 25
    assert result.session.completed is False
    assert engine.store.get_event(event.event_id).completed is False
    assert engine.store.current_version(STUDENT) == version


def test_short_session_credits_one_minute(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    started = engine.start_session(STUDENT, event.event_id, started_at=NOW)

    result = engine.end_session(started.session_id, ended_at=NOW + timedelta(seconds=20))

    assert result.session.duration_minutes == 0
    assert result.event is not None
    assert result.event.actual_minutes == 1


def test_session_for_completed_event_keeps_recorded_minutes(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    engine.mark_complete(event.event_id, 55, completed_at=NOW)
    started = engine.start_session(STUDENT, event.event_id, started_at=NOW + timedelta(hours=1))

    result = engine.end_session(started.session_id, ended_at=NOW + timedelta(hours=2))

    assert result.session.duration_minutes == 60
    assert result.event is not None
    assert result.event.actual_minutes == 55


def test_sessions_reject_unknown_or_foreign_events(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    foreign = _generate(engine, student_id="stu-other")[0]

    with pytest.raises(NotFound):
        engine.start_session(STUDENT, foreign.event_id)
    with pytest.raises(NotFound):
        engine.start_session(STUDENT, "missing-event")
    with pytest.raises(NotFound):
        engine.end_session("missing-session")
    assert engine.sessions(STUDENT) == []


def test_deleting_an_event_detaches_its_sessions(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    events = _generate(engine)
    kept = engine.start_session(STUDENT, events[1].event_id, started_at=NOW)
    orphaned = engine.start_session(STUDENT, events[0].event_id, started_at=NOW + timedelta(hours=2))

    engine.delete(events[0].event_id)

    by_id = {session.session_id: session for session in engine.sessions(STUDENT)}
    assert by_id[orphaned.session_id].event_id is None
    assert by_id[kept.session_id].event_id == events[1].event_id

    result = engine.end_session(orphaned.session_id, ended_at=NOW + timedelta(hours=3))
    assert result.event is None
    assert result.session.duration_minutes == 60


def test_sessions_are_listed_newest_first(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    first = engine.start_session(STUDENT, started_at=NOW - timedelta(days=3))
    second = engine.start_session(STUDENT, started_at=NOW - timedelta(days=1))
    engine.start_session("stu-other", started_at=NOW)

    assert [session.session_id for session in engine.sessions(STUDENT)] == [second.session_id, first.session_id]
    assert [session.session_id for session in engine.sessions(STUDENT, since=NOW - timedelta(days=2))] == [
        second.session_id
    ]


def test_tracked_sessions_feed_stats(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]
    started = engine.start_session(STUDENT, event.event_id, started_at=event.scheduled_at)
    engine.end_session(started.session_id, ended_at=event.scheduled_at + timedelta(minutes=50))
    idle = engine.start_session(STUDENT, started_at=event.scheduled_at + timedelta(hours=2))
    engine.end_session(idle.session_id, completed=False, ended_at=event.scheduled_at + timedelta(hours=3))

    stats = engine.stats(STUDENT, now=event.scheduled_at + timedelta(days=1))

    assert stats.tracked_session_count == 1
    assert stats.tracked_session_minutes == 50
    assert stats.completed_count == 1
    assert stats.on_track_status == "on-track"


def test_session_lifecycle_is_reported(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    event = _generate(engine)[0]

    with capture_events(["study_session_started", "study_session_ended"]) as captured:
        started = engine.start_session(STUDENT, event.event_id, started_at=NOW)
        engine.end_session(started.session_id, ended_at=NOW + timedelta(minutes=35))

    started_event, ended_event = captured
    assert started_event.name == "study_session_started"
    assert started_event.payload["event_id"] == event.event_id
    assert ended_event.payload["session_id"] == started.session_id
    assert ended_event.payload["duration_minutes"] == 35
    assert ended_event.payload["event_completed"] is True
