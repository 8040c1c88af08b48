"""Layout rules shared by the generator, the store, and the adaptive scheduler."""

from __future__ import annotations

import statistics
from datetime import datetime, timedelta
from typing import Collection, Iterable, List, Optional, Sequence, Tuple

from .models import CalendarEvent

ROLLING_WINDOW = timedelta(days=7)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def window_load(events: Iterable[CalendarEvent], at: datetime) -> int:
    """Planned minutes of events starting in the 7 days ending at ``at`` (inclusive)."""
    floor = at - ROLLING_WINDOW
    return sum(event.planned_minutes for event in events if floor < event.scheduled_at <= at)


def fits_weekly_window(
    placed: Iterable[CalendarEvent],
    start: datetime,
    minutes: int,
    cap_minutes: int,
    *,
    slack_ratio: float = 0.0,
) -> bool:
    """Whether a session of ``minutes`` at ``start`` keeps every 7-day window under the cap.

    ``placed`` must only contain events starting at or before ``start``. A unit
    longer than the cap is allowed into an otherwise empty window.
    """
    load = window_load(placed, start)
    if load == 0:
        return True
    return load + minutes <= cap_minutes * (1.0 + slack_ratio)


def max_window_load(events: Sequence[CalendarEvent], *, shared_only: bool = False) -> int:
    """Largest planned total over any 7-day window starting at an event.

    With ``shared_only`` a window holding a single session is ignored, matching
    the rule that lets an oversized unit into an otherwise empty week.
    """
    ordered = sorted(events, key=lambda event: event.scheduled_at)
    best = 0
    for index, anchor in enumerate(ordered):
        ceiling = anchor.scheduled_at + ROLLING_WINDOW
        total = 0
        count = 0
        for event in ordered[index:]:
            if event.scheduled_at >= ceiling:
                break
            total += event.planned_minutes
            count += 1
        if shared_only and count < 2:
            continue
        best = max(best, total)
    return best


def find_overlap(
    events: Sequence[CalendarEvent],
    changed_ids: Collection[str],
) -> Optional[Tuple[CalendarEvent, CalendarEvent]]:
    """Return the first pair of overlapping events where at least one changed."""
    changed = [event for event in events if event.event_id in changed_ids]
    for candidate in changed:
        for other in events:
            if other.event_id == candidate.event_id:
                continue
            if intervals_overlap(candidate.scheduled_at, candidate.ends_at, other.scheduled_at, other.ends_at):
                return candidate, other
    return None


def find_order_violation(
    events: Sequence[CalendarEvent],
    changed_ids: Collection[str],
) -> Optional[Tuple[CalendarEvent, CalendarEvent]]:
    """Return a pending pair of the same course scheduled against unit order."""
    pending = [event for event in events if not event.completed]
    for candidate in pending:
        if candidate.event_id not in changed_ids:
            continue
        for other in pending:
            if other.event_id == candidate.event_id or other.course_id != candidate.course_id:
                continue
            if other.sequence_position < candidate.sequence_position and other.scheduled_at > candidate.scheduled_at:
                return other, candidate
            if other.sequence_position > candidate.sequence_position and other.scheduled_at < candidate.scheduled_at:
                return candidate, other
    return None


def median_interval(events: Sequence[CalendarEvent]) -> Optional[timedelta]:
    """Median gap between consecutive scheduled sessions."""
    starts = sorted(event.scheduled_at for event in events)
    gaps: List[float] = [
        (later - earlier).total_seconds() for earlier, later in zip(starts, starts[1:]) if later > earlier
    ]
    if not gaps:
        return None
    return timedelta(seconds=statistics.median(gaps))


__all__ = [
    "ROLLING_WINDOW",
    "find_order_violation",
    "find_overlap",
    "fits_weekly_window",
    "intervals_overlap",
    "max_window_load",
    "median_interval",
    "window_load",
]
