"""Pace classification and corrective calendar adjustments."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .calendar_store import CalendarStore
from .config import Settings, get_settings
from .errors import InsufficientHistory
from .models import (
    AdaptationSuggestion,
    CalendarEvent,
    ScheduleMutation,
    SchedulePreferences,
    StudyStats,
    ensure_utc,
)
from .scheduling_rules import fits_weekly_window, intervals_overlap, max_window_load, median_interval
from .study_stats import compute_study_stats, duration_variance

logger = logging.getLogger(__name__)


ONE_DAY = timedelta(days=1)
MAX_SETTLE_STEPS = 400
SCALE_SEARCH_STEPS = 32


def _ceil_to_minute(value: datetime) -> datetime:
    if value.second or value.microsecond:
        value = value.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return value


class AdaptiveScheduler:
    """Compares behavior with the plan and proposes bounded corrections."""

    def __init__(
        self,
        store: CalendarStore,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._break = timedelta(minutes=self._settings.session_break_minutes)

    # Entry points

    def analyze_and_adapt(
        self,
        student_id: str,
        *,
        now: Optional[datetime] = None,
        strict: bool = False,
    ) -> AdaptationSuggestion:
        """Read the student's calendar and return a suggestion; nothing is written.

        With ``strict`` a thin history raises :class:`InsufficientHistory`
        instead of returning the neutral suggestion.
        """
        moment = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        version = self._store.current_version(student_id)
        events = self._store.list_events(student_id)
        preferences = self._store.get_preferences(student_id)
        suggestion = self.analyze(student_id, events, preferences, now=moment, version=version)
        if strict and suggestion.insufficient_history:
            raise InsufficientHistory(suggestion.rationale, details={"student_id": student_id})
        return suggestion

    def apply_suggestion(self, suggestion: AdaptationSuggestion) -> Tuple[List[CalendarEvent], int]:
        """Commit a suggestion through the store's atomic bulk adjustment."""
        if suggestion.is_noop:
            return [], suggestion.based_on_version
        return self._store.apply_mutations(
            suggestion.student_id,
            suggestion.mutations,
            expected_version=suggestion.based_on_version,
            reason="adaptation_applied",
        )

    # Analysis

    def analyze(
        self,
        student_id: str,
        events: Sequence[CalendarEvent],
        preferences: Sequence[SchedulePreferences] = (),
        *,
        now: datetime,
        version: int = 0,
    ) -> AdaptationSuggestion:
        settings = self._settings
        now = ensure_utc(now)
        zone = preferences[0].constraints.zone if preferences else timezone.utc
        stats = compute_study_stats(
            student_id,
            events,
            now=now,
            window_days=settings.stats_window_days,
            zone=zone,
        )
        completed = sorted(
            (event for event in events if event.completed),
            key=lambda event: event.completed_at or event.scheduled_at,
        )
        pending = sorted((event for event in events if not event.completed), key=lambda event: event.scheduled_at)

        recent = completed[-settings.struggling_sample_size :]
        recent_variance = sum(duration_variance(event) for event in recent) / len(recent) if recent else 0.0
        struggling = (
            len(recent) >= settings.struggling_sample_size and recent_variance > settings.struggling_variance
        )

        gap_exceeded, gap, interval = self._gap_exceeded(events, pending, stats, now)
        rate_low = stats.scheduled_count > 0 and stats.completion_rate < settings.falling_behind_completion_rate

        base = {
            "student_id": student_id,
            "based_on_version": version,
            "stats": stats,
            "generated_at": now,
        }

        if struggling and pending:
            mutations, extended = self._lengthen(pending, completed, preferences, recent_variance)
            return AdaptationSuggestion(
                classification="struggling",
                urgency="high" if recent_variance > 1.0 else "medium",
                confidence=self._confidence(len(recent) + stats.completed_count),
                rationale=(
                    f"The last {len(recent)} sessions ran {recent_variance:.0%} over plan on average; "
                    f"upcoming sessions are lengthened and review gaps added before harder units."
                ),
                mutations=mutations,
                span_extended=extended,
                **base,
            )

        if (rate_low or gap_exceeded) and pending:
            mutations, extended = self._compress(pending, completed, preferences, now)
            reasons = []
            if rate_low:
                reasons.append(
                    f"completion rate {stats.completion_rate:.0%} is below "
                    f"{settings.falling_behind_completion_rate:.0%}"
                )
            if gap_exceeded and gap is not None and interval is not None:
                reasons.append(
                    f"{gap.total_seconds() / 86400:.1f} days since the last completed session "
                    f"against a usual {interval.total_seconds() / 86400:.1f}-day rhythm"
                )
            rationale = "Falling behind: " + " and ".join(reasons) + "."
            if extended:
                rationale += " The remaining sessions cannot fit before the target date; the plan is extended."
            else:
                rationale += " Remaining sessions are compressed to keep the target date."
            return AdaptationSuggestion(
                classification="falling-behind",
                urgency="high" if extended or stats.completion_rate < 0.3 else "medium",
                confidence=self._confidence(stats.scheduled_count),
                rationale=rationale,
                mutations=mutations,
                span_extended=extended,
                **base,
            )

        if stats.completed_count < settings.min_history_events:
            return AdaptationSuggestion(
                classification="on-pace",
                urgency="low",
                confidence=0.2,
                rationale=(
                    f"Only {stats.completed_count} completed sessions so far; at least "
                    f"{settings.min_history_events} are needed before adjusting the plan."
                ),
                insufficient_history=True,
                **base,
            )

        variance = stats.average_duration_variance
        band = settings.duration_variance_band
        if stats.completion_rate >= settings.on_pace_completion_rate and variance < -band and pending:
            mutations = self._pull_forward(pending, events, preferences, now)
            return AdaptationSuggestion(
                classification="ahead-of-pace",
                urgency="low",
                confidence=self._confidence(stats.completed_count),
                rationale=(
                    f"Sessions take {abs(variance):.0%} less time than planned at a "
                    f"{stats.completion_rate:.0%} completion rate; the next sessions are pulled forward."
                ),
                mutations=mutations,
                **base,
            )

        within_band = abs(variance) <= band and stats.completion_rate >= settings.on_pace_completion_rate
        confidence = self._confidence(stats.completed_count)
        return AdaptationSuggestion(
            classification="on-pace",
            urgency="low",
            confidence=confidence if within_band else round(confidence * 0.6, 2),
            rationale=(
                f"Completion rate {stats.completion_rate:.0%} with sessions {variance:+.0%} against plan; "
                "no changes needed."
            ),
            **base,
        )

    # Signals

    def _gap_exceeded(
        self,
        events: Sequence[CalendarEvent],
        pending: Sequence[CalendarEvent],
        stats: StudyStats,
        now: datetime,
    ) -> Tuple[bool, Optional[timedelta], Optional[timedelta]]:
        interval = median_interval(events)
        overdue = [event for event in pending if event.scheduled_at <= now]
        if interval is None or not overdue:
            return False, None, interval
        reference = stats.last_completed_at or min(event.scheduled_at for event in events)
        gap = now - reference
        return gap > interval * self._settings.falling_behind_gap_factor, gap, interval

    @staticmethod
    def _confidence(sample: int) -> float:
        return round(min(0.95, 0.4 + 0.05 * sample), 2)

    def _caps(self, preferences: Iterable[SchedulePreferences]) -> Dict[str, int]:
        return {pref.course_id: pref.constraints.weekly_cap_minutes for pref in preferences}

    # Placement

    def _settle(
        self,
        chain: Sequence[Tuple[CalendarEvent, datetime, int]],
        fixed: Sequence[CalendarEvent],
        caps: Dict[str, int],
    ) -> List[CalendarEvent]:
        """Place proposals in order without overlaps and under each course's weekly cap."""
        slack = self._settings.weekly_slack_ratio
        placed: List[CalendarEvent] = []
        previous_end: Optional[datetime] = None
        for event, proposed_at, minutes in chain:
            start = proposed_at
            if previous_end is not None and start < previous_end + self._break:
                start = previous_end + self._break
            length = timedelta(minutes=minutes)
            for _ in range(MAX_SETTLE_STEPS):
                blocker = next(
                    (
                        other
                        for other in fixed
                        if intervals_overlap(start, start + length, other.scheduled_at, other.ends_at)
                    ),
                    None,
                )
                if blocker is not None:
                    start = blocker.ends_at + self._break
                    continue
                cap = caps.get(event.course_id)
                if cap is not None:
                    history = [other for other in (*fixed, *placed) if other.course_id == event.course_id]
                    if not fits_weekly_window(history, start, minutes, cap, slack_ratio=slack):
                        start += ONE_DAY
                        continue
                break
            settled = event.model_copy(update={"scheduled_at": start, "planned_minutes": minutes})
            placed.append(settled)
            previous_end = settled.ends_at
        return placed

    def _mutations(
        self,
        originals: Sequence[CalendarEvent],
        settled: Sequence[CalendarEvent],
        note: str,
    ) -> List[ScheduleMutation]:
        mutations: List[ScheduleMutation] = []
        for original, updated in zip(originals, settled):
            if updated.planned_minutes != original.planned_minutes:
                mutations.append(
                    ScheduleMutation(
                        event_id=original.event_id,
                        action="change_duration",
                        previous_planned_minutes=original.planned_minutes,
                        planned_minutes=updated.planned_minutes,
                        note=note,
                    )
                )
            if updated.scheduled_at != original.scheduled_at:
                mutations.append(
                    ScheduleMutation(
                        event_id=original.event_id,
                        action="reschedule",
                        previous_scheduled_at=original.scheduled_at,
                        scheduled_at=updated.scheduled_at,
                        note=note,
                    )
                )
        return mutations

    def _compress(
        self,
        pending: Sequence[CalendarEvent],
        completed: Sequence[CalendarEvent],
        preferences: Sequence[SchedulePreferences],
        now: datetime,
    ) -> Tuple[List[ScheduleMutation], bool]:
        first = pending[0]
        anchor = datetime.combine(now.date(), first.scheduled_at.timetz())
        if anchor < now:
            anchor += ONE_DAY

        target_end = pending[-1].scheduled_at
        course_targets = [
            pref.target_completion_at for pref in preferences if any(e.course_id == pref.course_id for e in pending)
        ]
        if course_targets:
            target_end = min(target_end, max(course_targets))

        gaps = [later.scheduled_at - earlier.scheduled_at for earlier, later in zip(pending, pending[1:])]
        floors = [
            max(min(gap, ONE_DAY), timedelta(minutes=earlier.planned_minutes) + self._break)
            for gap, earlier in zip(gaps, pending)
        ]

        def _end_for(scale: float) -> datetime:
            return anchor + sum(
                (max(floor, gap * scale) for gap, floor in zip(gaps, floors)),
                timedelta(0),
            )

        extended = False
        if _end_for(0.0) > target_end:
            scale = 0.0
            extended = True
        elif _end_for(1.0) <= target_end:
            scale = 1.0
        else:
            low, high = 0.0, 1.0
            for _ in range(SCALE_SEARCH_STEPS):
                middle = (low + high) / 2
                if _end_for(middle) <= target_end:
                    low = middle
                else:
                    high = middle
            scale = low

        chain: List[Tuple[CalendarEvent, datetime, int]] = []
        cursor = anchor
        for index, event in enumerate(pending):
            if index:
                cursor += max(floors[index - 1], gaps[index - 1] * scale)
            chain.append((event, cursor.replace(second=0, microsecond=0), event.planned_minutes))

        settled = self._settle(chain, completed, self._caps(preferences))
        if settled and settled[-1].scheduled_at > target_end:
            extended = True
        note = "compressed to recover pace" if not extended else "rescheduled; target date extended"
        return self._mutations(pending, settled, note), extended

    def _pull_forward(
        self,
        pending: Sequence[CalendarEvent],
        events: Sequence[CalendarEvent],
        preferences: Sequence[SchedulePreferences],
        now: datetime,
    ) -> List[ScheduleMutation]:
        upcoming = [event for event in pending if event.scheduled_at > now]
        layout: Dict[str, CalendarEvent] = {event.event_id: event for event in events}
        caps = self._caps(preferences)
        slack = self._settings.weekly_slack_ratio
        mutations: List[ScheduleMutation] = []

        for event in upcoming[: self._settings.pull_forward_sessions]:
            before = [other for other in layout.values() if other.scheduled_at < event.scheduled_at]
            floor = now
            if before:
                predecessor = max(before, key=lambda other: other.scheduled_at)
                floor = max(floor, predecessor.ends_at + self._break)
            if floor >= event.scheduled_at:
                break
            candidate_at = _ceil_to_minute(event.scheduled_at - (event.scheduled_at - floor) / 2)
            candidate = event.model_copy(update={"scheduled_at": candidate_at})
            proposed = {**layout, event.event_id: candidate}

            collision = any(
                intervals_overlap(candidate.scheduled_at, candidate.ends_at, other.scheduled_at, other.ends_at)
                for other in proposed.values()
                if other.event_id != event.event_id
            )
            cap = caps.get(event.course_id)
            if not collision and cap is not None:
                course_before = [other for other in layout.values() if other.course_id == event.course_id]
                course_after = [other for other in proposed.values() if other.course_id == event.course_id]
                allowed = max(cap * (1.0 + slack), max_window_load(course_before))
                collision = max_window_load(course_after) > allowed
            if collision:
                break

            layout = proposed
            mutations.append(
                ScheduleMutation(
                    event_id=event.event_id,
                    action="reschedule",
                    previous_scheduled_at=event.scheduled_at,
                    scheduled_at=candidate_at,
                    note="pulled forward; student is ahead of pace",
                )
            )
        return mutations

    def _lengthen(
        self,
        pending: Sequence[CalendarEvent],
        completed: Sequence[CalendarEvent],
        preferences: Sequence[SchedulePreferences],
        variance: float,
    ) -> Tuple[List[ScheduleMutation], bool]:
        growth = min(1.0 + variance, self._settings.max_duration_growth)
        review_gap = timedelta(days=self._settings.review_gap_days)

        chain: List[Tuple[CalendarEvent, datetime, int]] = []
        shift = timedelta(0)
        last_tier: Dict[str, int] = {}
        for event in completed:
            last_tier[event.course_id] = event.estimated_difficulty
        for event in pending:
            previous_tier = last_tier.get(event.course_id)
            if previous_tier is not None and event.estimated_difficulty > previous_tier:
                shift += review_gap
            last_tier[event.course_id] = event.estimated_difficulty
            minutes = max(event.planned_minutes, math.ceil(round(event.planned_minutes * growth, 6)))
            chain.append((event, event.scheduled_at + shift, minutes))

        settled = self._settle(chain, completed, self._caps(preferences))
        extended = False
        targets = {pref.course_id: pref.target_completion_at for pref in preferences}
        for event in settled:
            target = targets.get(event.course_id)
            if target is not None and event.scheduled_at > target:
                extended = True
                break
        return self._mutations(pending, settled, "lengthened for observed pace"), extended


__all__ = ["AdaptiveScheduler"]
