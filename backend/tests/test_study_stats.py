from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from study_calendar.models import CalendarEvent, StudySession
from study_calendar.study_stats import compute_study_stats, duration_variance, enrollment_instant, on_track_status

START = datetime(2026, 9, 1, 18, 0, tzinfo=timezone.utc)


def _event(day: int, *, actual=None, minutes: int = 60, created_day: int = 0, completed_day=None) -> CalendarEvent:
    scheduled_at = START + timedelta(days=day)
    completed = actual is not None
    completed_at = None
    if completed:
        completed_at = START + timedelta(days=completed_day if completed_day is not None else day, hours=1)
    return CalendarEvent(
        student_id="stu-stats",
        course_id="course-a",
        unit_id=f"unit-{day}",
        scheduled_at=scheduled_at,
        planned_minutes=minutes,
        completed=completed,
        actual_minutes=actual,
        completed_at=completed_at,
        created_at=START + timedelta(days=created_day),
    )


def test_empty_calendar_produces_zeroed_stats() -> None:
    now = datetime(2026, 10, 1, tzinfo=timezone.utc)
    stats = compute_study_stats("stu-stats", [], now=now)
    assert stats.scheduled_count == 0
    assert stats.completion_rate == 0.0
    assert stats.window_start == now - timedelta(days=90)
    assert stats.last_completed_at is None
    assert stats.projected_completion_at is None


def test_window_is_capped_at_ninety_days() -> None:
    events = [_event(0, actual=60), _event(120), _event(125, actual=30)]
    now = START + timedelta(days=126)

    stats = compute_study_stats("stu-stats", events, now=now)

    assert stats.window_start == now - timedelta(days=90)
    assert stats.scheduled_count == 2
    assert stats.completed_count == 1
    assert stats.completion_rate == pytest.approx(0.5)
    assert stats.total_actual_minutes == 30


def test_window_starts_at_enrollment_when_shorter() -> None:
    events = [_event(2, created_day=1), _event(4, created_day=1)]
    now = START + timedelta(days=10)

    stats = compute_study_stats("stu-stats", events, now=now)

    assert stats.window_start == START + timedelta(days=1)
    assert stats.scheduled_count == 2
    assert stats.projected_completion_at == START + timedelta(days=4)


def test_early_completion_counts_inside_window() -> None:
    events = [_event(20, actual=50, completed_day=5)]
    now = START + timedelta(days=6)

    stats = compute_study_stats("stu-stats", events, now=now)

    assert stats.scheduled_count == 1
    assert stats.completed_count == 1
    assert stats.completion_rate == 1.0
    assert stats.average_duration_variance == pytest.approx(-0.1667, abs=1e-4)


def test_streaks_follow_the_students_timezone() -> None:
    # 18:00 UTC plus an hour is 16:00 in Sao Paulo, so every completion keeps its UTC day.
    events = [_event(day, actual=60) for day in (0, 1, 2, 5, 6)]
    now = START + timedelta(days=7, hours=3)

    stats = compute_study_stats("stu-stats", events, now=now, zone=ZoneInfo("America/Sao_Paulo"))

    assert stats.longest_streak_days == 3
    assert stats.current_streak_days == 2
    assert stats.sessions_this_week == 4


def test_streak_survives_until_the_day_is_over() -> None:
    events = [_event(day, actual=60) for day in (0, 1)]
    now = START + timedelta(days=2, hours=2)

    stats = compute_study_stats("stu-stats", events, now=now)

    assert stats.current_streak_days == 2


def test_duration_variance_and_enrollment_helpers() -> None:
    done = _event(0, actual=90)
    pending = _event(3, created_day=-2)
    assert duration_variance(done) == pytest.approx(0.5)
    assert duration_variance(pending) == 0.0
    assert enrollment_instant([done, pending]) == START - timedelta(days=2)
    assert enrollment_instant([]) is None


PACE_NOW = START + timedelta(days=4, hours=12)


@pytest.mark.parametrize(
    "events, expected",
    [
        ([_event(0, actual=60), _event(2), _event(4), _event(6)], "behind"),
        ([_event(day, actual=60) for day in range(4)] + [_event(4), _event(6)], "on-track"),
        (
            [_event(0, actual=60), _event(2, actual=60), _event(4, actual=60), _event(6, actual=60, completed_day=4)],
            "ahead",
        ),
        ([_event(0, actual=60), _event(2, actual=60), _event(4), _event(6, actual=60, completed_day=6)], "behind"),
        ([_event(6), _event(8)], "on-track"),
        ([_event(6, actual=60, completed_day=3), _event(8)], "ahead"),
    ],
)
def test_on_track_status_compares_finished_with_due(events, expected) -> None:
    assert on_track_status(events, PACE_NOW) == expected


def test_stats_report_pace_and_tracked_sessions() -> None:
    events = [_event(0, actual=60), _event(2, actual=45), _event(4), _event(6)]

    def _session(day: int, minutes: int, *, completed: bool = True, ended: bool = True) -> StudySession:
        started_at = START + timedelta(days=day)
        return StudySession(
            student_id="stu-stats",
            started_at=started_at,
            ended_at=started_at + timedelta(minutes=minutes) if ended else None,
            duration_minutes=minutes if ended else None,
            completed=completed,
        )

    sessions = [
        _session(0, 55),
        _session(2, 40),
        _session(3, 20, completed=False),
        _session(4, 0, ended=False),
        _session(-30, 90),
    ]

    stats = compute_study_stats("stu-stats", events, now=PACE_NOW, sessions=sessions)

    assert stats.on_track_status == "behind"
    assert stats.tracked_session_count == 2
    assert stats.tracked_session_minutes == 95
