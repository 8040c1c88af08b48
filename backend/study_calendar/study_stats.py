"""Behavioral aggregates over a student's calendar."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Sequence, Set

from .models import CalendarEvent, OnTrackStatus, StudySession, StudyStats, ensure_utc

DEFAULT_WINDOW_DAYS = 90
AHEAD_RATIO = 1.1
ON_TRACK_RATIO = 0.8


def enrollment_instant(events: Sequence[CalendarEvent]) -> Optional[datetime]:
    """Earliest point the student's calendar shows any activity."""
    if not events:
        return None
    return min(min(event.created_at, event.scheduled_at) for event in events)


def duration_variance(event: CalendarEvent) -> float:
    """Relative overrun of a completed event; positive means it ran long."""
    if not event.completed or event.actual_minutes is None:
        return 0.0
    return (event.actual_minutes - event.planned_minutes) / event.planned_minutes


def on_track_status(events: Sequence[CalendarEvent], now: datetime) -> OnTrackStatus:
    """Compare sessions finished so far with sessions due so far.

    Early completions count toward the finished side, so a student working
    ahead of the calendar reaches a ratio above one.
    """
    moment = ensure_utc(now)
    due = sum(1 for event in events if event.scheduled_at <= moment)
    done = sum(
        1
        for event in events
        if event.completed and (event.completed_at is None or event.completed_at <= moment)
    )
    if due == 0:
        return "ahead" if done else "on-track"
    ratio = done / due
    if ratio >= AHEAD_RATIO:
        return "ahead"
    if ratio >= ON_TRACK_RATIO:
        return "on-track"
    return "behind"


def _streaks(days: Set[date], today: date) -> tuple[int, int]:
    longest = 0
    run = 0
    previous: Optional[date] = None
    for day in sorted(days):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        longest = max(longest, run)
        previous = day

    cursor = today if today in days else today - timedelta(days=1)
    current = 0
    while cursor in days:
        current += 1
        cursor -= timedelta(days=1)
    return current, longest


def compute_study_stats(
    student_id: str,
    events: Sequence[CalendarEvent],
    *,
    now: Optional[datetime] = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
    zone: tzinfo = timezone.utc,
    sessions: Sequence[StudySession] = (),
) -> StudyStats:
    """Aggregate due and completed work in the trailing window ending at ``now``.

    The window is ``window_days`` long or starts at enrollment, whichever is
    shorter. An event counts when it was scheduled inside the window or
    completed inside it, so sessions finished early still count as done.
    """
    window_end = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    window_start = window_end - timedelta(days=window_days)
    enrolled = enrollment_instant(events)
    if enrolled is not None and enrolled > window_start:
        window_start = min(enrolled, window_end)

    def _in_window(moment: Optional[datetime]) -> bool:
        return moment is not None and window_start <= moment <= window_end

    due: List[CalendarEvent] = [
        event
        for event in events
        if _in_window(event.scheduled_at) or (event.completed and _in_window(event.completed_at))
    ]
    completed = [event for event in due if event.completed]

    planned_total = sum(event.planned_minutes for event in due)
    actual_total = sum(event.actual_minutes or 0 for event in completed)
    completion_rate = len(completed) / len(due) if due else 0.0
    variance = sum(duration_variance(event) for event in completed) / len(completed) if completed else 0.0
    average_session = actual_total / len(completed) if completed else 0.0

    all_completed = [event for event in events if event.completed and event.completed_at is not None]
    completion_days = {event.completed_at.astimezone(zone).date() for event in all_completed}  # type: ignore[union-attr]
    current_streak, longest_streak = _streaks(completion_days, window_end.astimezone(zone).date())
    week_floor = window_end - timedelta(days=7)
    sessions_this_week = sum(
        1 for event in all_completed if week_floor < event.completed_at <= window_end  # type: ignore[operator]
    )
    last_completed = max((event.completed_at for event in all_completed), default=None)
    pending = [event.scheduled_at for event in events if not event.completed]
    tracked = [
        session
        for session in sessions
        if session.completed and session.ended_at is not None and _in_window(session.started_at)
    ]

    return StudyStats(
        student_id=student_id,
        window_start=window_start,
        window_end=window_end,
        scheduled_count=len(due),
        completed_count=len(completed),
        completion_rate=round(completion_rate, 4),
        total_planned_minutes=planned_total,
        total_actual_minutes=actual_total,
        average_duration_variance=round(variance, 4),
        average_session_minutes=round(average_session, 2),
        current_streak_days=current_streak,
        longest_streak_days=longest_streak,
        sessions_this_week=sessions_this_week,
        last_completed_at=last_completed,
        projected_completion_at=max(pending, default=None),
        on_track_status=on_track_status(events, window_end),
        tracked_session_count=len(tracked),
        tracked_session_minutes=sum(session.duration_minutes or 0 for session in tracked),
    )


__all__ = [
    "DEFAULT_WINDOW_DAYS",
    "compute_study_stats",
    "duration_variance",
    "enrollment_instant",
    "on_track_status",
]
