from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from study_calendar.calendar_generator import CalendarGenerator
from study_calendar.errors import InvalidConstraints
from study_calendar.models import CalendarEvent, LearningUnit, OnboardingConstraints
from study_calendar.scheduling_rules import find_overlap, max_window_load

NOW = datetime(2026, 11, 1, 12, 0, tzinfo=timezone.utc)


def _units(count: int, minutes: int = 60, course_id: str = "course-a", tiers=None):
    return [
        LearningUnit(
            unit_id=f"unit-{index}",
            course_id=course_id,
            sequence_position=index,
            duration_minutes=minutes,
            difficulty_tier=(tiers[index] if tiers else 3),
        )
        for index in range(count)
    ]


def _constraints(**overrides) -> OnboardingConstraints:
    payload = {
        "student_id": "stu-1",
        "course_id": "course-a",
        "available_hours_per_week": 5,
        "target_completion_weeks": 4,
    }
    payload.update(overrides)
    return OnboardingConstraints(**payload)


def test_five_hours_four_weeks_eight_units_fits_target() -> None:
    generator = CalendarGenerator()
    result = generator.generate(_constraints(), _units(8), now=NOW)

    assert result.total_events == 8
    assert result.total_minutes == 480
    assert not result.warnings
    assert not result.span_extended

    starts = [event.scheduled_at for event in result.events]
    assert starts == sorted(starts)
    assert len(set(starts)) == len(starts)
    assert [event.unit_id for event in result.events] == [f"unit-{index}" for index in range(8)]
    assert max_window_load(result.events) <= 300
    assert result.events[-1].ends_at <= result.target_completion_at
    assert result.target_completion_at == datetime(2026, 11, 30, tzinfo=timezone.utc)
    assert result.events[0].scheduled_at == datetime(2026, 11, 2, 19, 0, tzinfo=timezone.utc)
    assert find_overlap(result.events, {event.event_id for event in result.events}) is None


def test_events_carry_unit_difficulty_and_timestamps() -> None:
    generator = CalendarGenerator()
    result = generator.generate(_constraints(), _units(3, tiers=[1, 4, 5]), now=NOW)

    assert [event.estimated_difficulty for event in result.events] == [1, 4, 5]
    for event in result.events:
        assert event.completed is False
        assert event.actual_minutes is None
        assert event.created_at == NOW
        assert event.scheduled_at.tzinfo is not None


def test_overcommitted_plan_extends_span_and_warns() -> None:
    generator = CalendarGenerator()
    constraints = _constraints(available_hours_per_week=2, target_completion_weeks=2)
    result = generator.generate(constraints, _units(6), now=NOW)

    span_warnings = [warning for warning in result.warnings if warning.code == "span_extended"]
    assert len(span_warnings) == 1
    assert span_warnings[0].suggested_weeks == 3
    assert "we recommend 3 weeks instead of 2" in span_warnings[0].message
    assert result.planned_span_weeks >= 3
    assert max_window_load(result.events) <= 120


def test_oversized_unit_is_scheduled_alone_with_warning() -> None:
    generator = CalendarGenerator()
    units = [
        LearningUnit(unit_id="big", course_id="course-a", sequence_position=0, duration_minutes=90),
        LearningUnit(unit_id="small", course_id="course-a", sequence_position=1, duration_minutes=30),
    ]
    result = generator.generate(_constraints(available_hours_per_week=1), units, now=NOW)

    codes = {(warning.code, warning.unit_id) for warning in result.warnings}
    assert ("unit_exceeds_weekly_cap", "big") in codes
    big, small = result.events
    assert big.planned_minutes == 90
    assert small.scheduled_at - big.scheduled_at >= timedelta(days=7)


def test_preferred_days_slot_and_timezone_are_respected() -> None:
    generator = CalendarGenerator()
    constraints = _constraints(
        preferred_days=["monday", "wednesday"],
        preferred_time_slot="morning",
        start_date=date(2026, 11, 2),
        timezone="America/New_York",
    )
    result = generator.generate(constraints, _units(6), now=NOW)

    zone = ZoneInfo("America/New_York")
    for event in result.events:
        local = event.scheduled_at.astimezone(zone)
        assert local.weekday() in {0, 2}
        assert local.hour == 9
    assert result.events[0].scheduled_at.astimezone(zone).date() == date(2026, 11, 2)


def test_daily_cap_places_back_to_back_sessions_with_break() -> None:
    generator = CalendarGenerator(session_break_minutes=15)
    constraints = _constraints(
        available_hours_per_week=20,
        target_completion_weeks=1,
        preferred_days=["saturday"],
        daily_session_cap=2,
        start_date=date(2026, 11, 2),
    )
    result = generator.generate(constraints, _units(4), now=NOW)

    first, second, third, fourth = result.events
    assert first.scheduled_at.date() == second.scheduled_at.date() == date(2026, 11, 7)
    assert second.scheduled_at == first.ends_at + timedelta(minutes=15)
    assert third.scheduled_at.date() == date(2026, 11, 14)
    assert find_overlap(result.events, {event.event_id for event in result.events}) is None
    assert result.span_extended


def test_existing_events_are_not_overlapped() -> None:
    generator = CalendarGenerator(session_break_minutes=15)
    blocker = CalendarEvent(
        student_id="stu-1",
        course_id="course-b",
        unit_id="other",
        scheduled_at=datetime(2026, 11, 2, 19, 0, tzinfo=timezone.utc),
        planned_minutes=60,
    )
    result = generator.generate(_constraints(), _units(2), now=NOW, existing=[blocker])

    assert result.events[0].scheduled_at == datetime(2026, 11, 2, 20, 15, tzinfo=timezone.utc)
    combined = [blocker, *result.events]
    assert find_overlap(combined, {event.event_id for event in result.events}) is None


def test_session_length_preference_warns_about_long_units() -> None:
    generator = CalendarGenerator()
    result = generator.generate(_constraints(session_length="short"), _units(2), now=NOW)
    assert [warning.code for warning in result.warnings] == [
        "unit_exceeds_session_length",
        "unit_exceeds_session_length",
    ]


def test_units_are_sorted_by_sequence_position() -> None:
    generator = CalendarGenerator()
    units = list(reversed(_units(4)))
    result = generator.generate(_constraints(), units, now=NOW)
    assert [event.sequence_position for event in result.events] == [0, 1, 2, 3]


def test_empty_unit_list_is_rejected() -> None:
    with pytest.raises(InvalidConstraints):
        CalendarGenerator().generate(_constraints(), [], now=NOW)


def test_units_from_another_course_are_rejected() -> None:
    with pytest.raises(InvalidConstraints) as excinfo:
        CalendarGenerator().generate(_constraints(), _units(2, course_id="course-z"), now=NOW)
    assert excinfo.value.details["unexpected_courses"] == ["course-z"]


def test_nonpositive_hours_are_rejected_even_without_validation() -> None:
    constraints = OnboardingConstraints.model_construct(
        student_id="stu-1",
        course_id="course-a",
        available_hours_per_week=0,
        target_completion_weeks=4,
        preferred_days=[],
        preferred_time_slot="evening",
        daily_session_cap=None,
        session_length=None,
        start_date=None,
        timezone="UTC",
    )
    with pytest.raises(InvalidConstraints):
        CalendarGenerator().generate(constraints, _units(2), now=NOW)
