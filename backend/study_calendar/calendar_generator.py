"""Greedy calendar layout from onboarding constraints and course units."""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from .errors import InvalidConstraints
from .models import (
    TIME_SLOT_HOURS,
    WEEKDAYS,
    CalendarEvent,
    GenerationResult,
    GenerationWarning,
    LearningUnit,
    OnboardingConstraints,
    ensure_utc,
)
from .scheduling_rules import fits_weekly_window

logger = logging.getLogger(__name__)


DEFAULT_DAILY_SESSION_CAP = 1
DEFAULT_SESSION_BREAK_MINUTES = 15
MAX_PLACEMENT_DAYS = 3660


def start_of_day(day: date, zone) -> datetime:  # type: ignore[no-untyped-def]
    return datetime.combine(day, time(0), tzinfo=zone).astimezone(timezone.utc)


def target_completion_instant(constraints: OnboardingConstraints, start_day: date) -> datetime:
    return start_of_day(start_day + timedelta(weeks=constraints.target_completion_weeks), constraints.zone)


def resolve_start_day(constraints: OnboardingConstraints, now: datetime) -> date:
    if constraints.start_date is not None:
        return constraints.start_date
    return ensure_utc(now).astimezone(constraints.zone).date() + timedelta(days=1)


class CalendarGenerator:
    """Lays out one session per unit in course order under a rolling weekly cap."""

    def __init__(
        self,
        *,
        session_break_minutes: int = DEFAULT_SESSION_BREAK_MINUTES,
        max_placement_days: int = MAX_PLACEMENT_DAYS,
    ) -> None:
        self._break = timedelta(minutes=max(session_break_minutes, 0))
        self._max_days = max(max_placement_days, 7)

    def generate(
        self,
        constraints: OnboardingConstraints,
        units: Sequence[LearningUnit],
        *,
        now: Optional[datetime] = None,
        existing: Iterable[CalendarEvent] = (),
    ) -> GenerationResult:
        if constraints.available_hours_per_week <= 0:
            raise InvalidConstraints("available_hours_per_week must be greater than zero.")
        if constraints.target_completion_weeks < 1:
            raise InvalidConstraints("target_completion_weeks must be at least 1.")
        if not units:
            raise InvalidConstraints(f"Course '{constraints.course_id}' has no learning units to schedule.")
        foreign = sorted({unit.course_id for unit in units if unit.course_id != constraints.course_id})
        if foreign:
            raise InvalidConstraints(
                "Units must belong to the constrained course.",
                details={"course_id": constraints.course_id, "unexpected_courses": foreign},
            )

        current = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        ordered = sorted(units, key=lambda unit: (unit.sequence_position, unit.unit_id))
        cap = max(constraints.weekly_cap_minutes, 1)
        total_minutes = sum(unit.duration_minutes for unit in ordered)
        warnings: List[GenerationWarning] = []

        weeks_needed = math.ceil(total_minutes / cap)
        target_weeks = constraints.target_completion_weeks
        planned_span = max(target_weeks, weeks_needed)
        if weeks_needed > target_weeks:
            hours_needed = math.ceil(total_minutes / 60)
            warnings.append(
                GenerationWarning(
                    code="span_extended",
                    message=(
                        f"This course needs approximately {hours_needed} hours. "
                        f"At {constraints.available_hours_per_week:g} hours/week, we recommend "
                        f"{weeks_needed} weeks instead of {target_weeks}."
                    ),
                    suggested_weeks=weeks_needed,
                )
            )
        warnings.extend(self._unit_warnings(constraints, ordered, cap))

        start_day = resolve_start_day(constraints, current)
        daily_cap = constraints.daily_session_cap or DEFAULT_DAILY_SESSION_CAP
        weekdays, per_day, sessions_per_week = self._cadence(constraints, start_day, len(ordered), planned_span, daily_cap)

        busy = sorted(
            ((event.scheduled_at, event.ends_at) for event in existing),
            key=lambda interval: interval[0],
        )
        events = self._place(constraints, ordered, start_day, weekdays, per_day, cap, busy, current)

        target_at = target_completion_instant(constraints, start_day)
        first_at = events[0].scheduled_at
        last_at = events[-1].scheduled_at
        span_start = start_of_day(start_day, constraints.zone)
        actual_weeks = max(1, math.ceil((events[-1].ends_at - span_start) / timedelta(weeks=1)))
        if last_at >= target_at and not any(warning.code == "span_extended" for warning in warnings):
            warnings.append(
                GenerationWarning(
                    code="span_extended",
                    message=(
                        f"Sessions could not all fit before the {target_weeks}-week target; "
                        f"we recommend {actual_weeks} weeks."
                    ),
                    suggested_weeks=actual_weeks,
                )
            )

        logger.info(
            "Generated %d sessions for %s/%s over %d weeks (%d warnings)",
            len(events),
            constraints.student_id,
            constraints.course_id,
            actual_weeks,
            len(warnings),
        )
        return GenerationResult(
            student_id=constraints.student_id,
            course_id=constraints.course_id,
            events=events,
            total_events=len(events),
            total_minutes=total_minutes,
            start_date=first_at,
            end_date=events[-1].ends_at,
            sessions_per_week=sessions_per_week,
            weekly_cap_minutes=cap,
            planned_span_weeks=max(planned_span, actual_weeks),
            target_completion_at=target_at,
            warnings=warnings,
        )

    def _unit_warnings(
        self,
        constraints: OnboardingConstraints,
        units: Sequence[LearningUnit],
        cap: int,
    ) -> List[GenerationWarning]:
        warnings: List[GenerationWarning] = []
        session_cap = constraints.session_cap_minutes
        for unit in units:
            if unit.duration_minutes > cap:
                warnings.append(
                    GenerationWarning(
                        code="unit_exceeds_weekly_cap",
                        message=(
                            f"Unit '{unit.unit_id}' needs {unit.duration_minutes} minutes, more than the "
                            f"{cap}-minute weekly budget; it is scheduled alone in its week."
                        ),
                        unit_id=unit.unit_id,
                    )
                )
            elif session_cap is not None and unit.duration_minutes > session_cap:
                warnings.append(
                    GenerationWarning(
                        code="unit_exceeds_session_length",
                        message=(
                            f"Unit '{unit.unit_id}' runs {unit.duration_minutes} minutes, longer than the "
                            f"preferred {session_cap}-minute session."
                        ),
                        unit_id=unit.unit_id,
                    )
                )
        return warnings

    def _cadence(
        self,
        constraints: OnboardingConstraints,
        start_day: date,
        unit_count: int,
        planned_span: int,
        daily_cap: int,
    ) -> Tuple[Set[int], int, int]:
        preferred = sorted(WEEKDAYS.index(day) for day in constraints.preferred_days)
        available_days = len(preferred) or 7
        slots_per_week = available_days * daily_cap
        sessions_per_week = min(max(math.ceil(unit_count / planned_span), 1), slots_per_week)

        days_needed = min(available_days, math.ceil(sessions_per_week / daily_cap))
        if preferred:
            weekdays = {preferred[(index * len(preferred)) // days_needed] for index in range(days_needed)}
        else:
            anchor = start_day.weekday()
            weekdays = {(anchor + (index * 7) // days_needed) % 7 for index in range(days_needed)}
        per_day = min(daily_cap, math.ceil(sessions_per_week / days_needed))
        return weekdays, per_day, sessions_per_week

    def _place(
        self,
        constraints: OnboardingConstraints,
        units: Sequence[LearningUnit],
        start_day: date,
        weekdays: Set[int],
        per_day: int,
        cap: int,
        busy: List[Tuple[datetime, datetime]],
        now: datetime,
    ) -> List[CalendarEvent]:
        zone = constraints.zone
        hour = TIME_SLOT_HOURS[constraints.preferred_time_slot]
        placed: List[CalendarEvent] = []
        next_free: Optional[datetime] = None
        index = 0

        for offset in range(self._max_days):
            if index >= len(units):
                break
            day = start_day + timedelta(days=offset)
            if day.weekday() not in weekdays:
                continue
            slot = datetime.combine(day, time(hour), tzinfo=zone).astimezone(timezone.utc)
            placed_today = 0
            while placed_today < per_day and index < len(units):
                unit = units[index]
                if next_free is not None and slot < next_free:
                    slot = next_free
                slot = self._skip_busy(slot, unit.duration_minutes, busy)
                if slot.astimezone(zone).date() != day:
                    break
                if not fits_weekly_window(placed, slot, unit.duration_minutes, cap):
                    break
                event = CalendarEvent(
                    student_id=constraints.student_id,
                    course_id=constraints.course_id,
                    unit_id=unit.unit_id,
                    sequence_position=unit.sequence_position,
                    scheduled_at=slot,
                    planned_minutes=unit.duration_minutes,
                    estimated_difficulty=unit.difficulty_tier,
                    created_at=now,
                    updated_at=now,
                )
                placed.append(event)
                next_free = event.ends_at + self._break
                slot = next_free
                placed_today += 1
                index += 1

        if index < len(units):
            raise InvalidConstraints(
                f"Unable to place {len(units) - index} remaining units within {self._max_days} days.",
                details={"placed": index, "remaining": len(units) - index},
            )
        return placed

    def _skip_busy(self, slot: datetime, minutes: int, busy: List[Tuple[datetime, datetime]]) -> datetime:
        length = timedelta(minutes=minutes)
        moved = True
        while moved:
            moved = False
            for busy_start, busy_end in busy:
                if slot < busy_end and busy_start < slot + length:
                    slot = busy_end + self._break
                    moved = True
        return slot


__all__ = [
    "CalendarGenerator",
    "resolve_start_day",
    "start_of_day",
    "target_completion_instant",
]
