from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from study_calendar.catalog import InMemoryContentCatalog
from study_calendar.config import get_settings
from study_calendar.db.session import create_schema, dispose_engine
from study_calendar.engine import CalendarEngine
from study_calendar.errors import CourseNotFound, OverlapViolation
from study_calendar.models import LearningUnit
from study_calendar.telemetry import (
    TelemetryEvent,
    capture_events,
    emit_event,
    register_listener,
    unregister_listener,
)

NOW = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)
STUDENT = "stu-telemetry"


@pytest.fixture()
def captured(tmp_path: Path):
    os.environ["STUDY_CALENDAR_DATABASE_URL"] = f"sqlite:///{tmp_path / 'calendar.db'}"
    get_settings.cache_clear()
    dispose_engine()
    create_schema()
    with capture_events() as events:
        yield events


def _engine() -> CalendarEngine:
    units = [
        LearningUnit(unit_id=f"u{index}", course_id="course-a", sequence_position=index, duration_minutes=60)
        for index in range(4)
    ]
    return CalendarEngine(catalog=InMemoryContentCatalog(units))


def _constraints(course_id: str = "course-a") -> dict:
    return {
        "student_id": STUDENT,
        "course_id": course_id,
        "available_hours_per_week": 5,
        "target_completion_weeks": 4,
    }


def _named(events: List[TelemetryEvent], name: str) -> List[TelemetryEvent]:
    return [event for event in events if event.name == name]


def test_generation_success_is_reported(captured) -> None:
    result = _engine().generate(_constraints(), now=NOW)

    (event,) = _named(captured, "calendar_generation")
    assert event.payload["status"] == "success"
    assert event.payload["event_count"] == result.total_events == 4
    assert event.payload["version"] == 1
    assert event.payload["duration_ms"] >= 0


def test_generation_failure_is_reported(captured) -> None:
    with pytest.raises(CourseNotFound):
        _engine().generate(_constraints("course-z"), now=NOW)

    (event,) = _named(captured, "calendar_generation")
    assert event.payload["status"] == "error"
    assert event.payload["exception_type"] == "CourseNotFound"
    assert _named(captured, "calendar_conflict") == []


def test_edits_and_conflicts_are_reported(captured) -> None:
    engine = _engine()
    events = engine.generate(_constraints(), now=NOW).events

    engine.mark_complete(events[0].event_id, 70, completed_at=NOW + timedelta(days=1, hours=8))
    (completed,) = _named(captured, "event_completed")
    assert completed.payload["actual_minutes"] == 70
    assert completed.payload["already_completed"] is False

    shifted = engine.reschedule(events[3].event_id, events[3].scheduled_at + timedelta(days=1))
    (rescheduled,) = _named(captured, "event_rescheduled")
    assert rescheduled.payload["delta"] == 86400.0
    assert rescheduled.payload["version"] == shifted.version

    with pytest.raises(OverlapViolation):
        engine.reschedule(events[1].event_id, events[2].scheduled_at)
    (conflict,) = _named(captured, "calendar_conflict")
    assert conflict.payload["operation"] == "reschedule"
    assert conflict.payload["code"] == "overlap_violation"
    assert conflict.payload["student_id"] == STUDENT

    with pytest.raises(OverlapViolation):
        engine.update(events[2].event_id, {"scheduled_at": events[1].scheduled_at})
    update_conflict = _named(captured, "calendar_conflict")[-1]
    assert update_conflict.payload["operation"] == "update"
    assert update_conflict.payload["student_id"] == STUDENT


def test_adaptation_runs_are_reported(captured) -> None:
    engine = _engine()
    engine.generate(_constraints(), now=NOW)

    suggestion = engine.analyze(STUDENT, now=NOW + timedelta(days=12))
    (analyzed,) = _named(captured, "adaptation_analyzed")
    assert analyzed.payload["classification"] == suggestion.classification == "falling-behind"
    assert analyzed.payload["mutation_count"] == len(suggestion.mutations)

    engine.apply_adaptation(suggestion)
    (applied,) = _named(captured, "adaptation_applied")
    assert applied.payload["version"] == 2


def test_listener_failures_do_not_break_emission(captured) -> None:
    def broken(event: TelemetryEvent) -> None:
        raise ValueError("listener exploded")

    register_listener(broken)
    try:
        emit_event("custom", when=NOW, span=timedelta(minutes=5), codes=("a", "b"), nested={"at": NOW})
    finally:
        unregister_listener(broken)

    (event,) = _named(captured, "custom")
    assert event.payload == {
        "when": NOW.isoformat(),
        "span": 300.0,
        "codes": ["a", "b"],
        "nested": {"at": NOW.isoformat()},
    }
    assert event.emitted_at.tzinfo is not None


def test_capture_filters_by_name() -> None:
    with capture_events(["wanted"]) as events:
        emit_event("wanted", value=1)
        emit_event("ignored", value=2)
    emit_event("wanted", value=3)
    assert [event.payload["value"] for event in events] == [1]
