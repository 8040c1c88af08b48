"""Canonical per-student calendar store with cascade-aware rescheduling."""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Generator, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.session import get_session_factory, session_scope
from .errors import (
    AlreadyCompleted,
    ConcurrentModification,
    InvalidConstraints,
    InvalidDuration,
    NotFound,
    OverlapViolation,
    StorageError,
)
from .locks import StudentLockRegistry
from .models import (
    CalendarEvent,
    CompletionResult,
    EventFilters,
    EventPatch,
    GenerationResult,
    OnboardingConstraints,
    RescheduleResult,
    ScheduleMutation,
    SchedulePreferences,
    SessionEndResult,
    StudySession,
    StudyStats,
    ensure_utc,
)
from .repositories.calendar_events import CalendarEventRepository, calendar_events
from .repositories.study_sessions import StudySessionRepository, study_sessions
from .scheduling_rules import find_order_violation, find_overlap, max_window_load
from .study_stats import compute_study_stats

logger = logging.getLogger(__name__)


@dataclass
class _WriteContext:
    session: Session
    version: int
    changed: bool = False
    audit: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


def _validate_minutes(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidDuration("Actual minutes must be a number.", details={"actual_minutes": repr(value)})
    if not math.isfinite(value) or value <= 0:
        raise InvalidDuration("Actual minutes must be greater than zero.", details={"actual_minutes": value})
    return max(1, int(round(value)))


def _layout_errors(student_id: str, events: Sequence[CalendarEvent], changed_ids: Set[str]) -> None:
    """Raise :class:`OverlapViolation` when the proposed layout overlaps or reorders a course."""
    collision = find_overlap(events, changed_ids)
    if collision is not None:
        first, second = collision
        raise OverlapViolation(
            "The change would make two sessions overlap.",
            details={
                "student_id": student_id,
                "event_id": first.event_id,
                "conflicts_with": second.event_id,
                "scheduled_at": first.scheduled_at.isoformat(),
            },
        )
    inversion = find_order_violation(events, changed_ids)
    if inversion is not None:
        earlier, later = inversion
        raise OverlapViolation(
            "The change would schedule a unit after a later unit of the same course.",
            details={
                "student_id": student_id,
                "event_id": earlier.event_id,
                "unit_id": earlier.unit_id,
                "conflicts_with": later.event_id,
                "conflicting_unit_id": later.unit_id,
            },
        )


class CalendarStore:
    """Owns every student's event set; each operation is one transaction."""

    def __init__(
        self,
        *,
        repository: Optional[CalendarEventRepository] = None,
        sessions: Optional[StudySessionRepository] = None,
        locks: Optional[StudentLockRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        settings = settings or get_settings()
        self._repo = repository or calendar_events
        self._sessions = sessions or study_sessions
        self._slack = settings.weekly_slack_ratio
        self._locks = locks or StudentLockRegistry(default_timeout=settings.lock_timeout_seconds)
        self._window_days = settings.stats_window_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def locks(self) -> StudentLockRegistry:
        return self._locks

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # Transactions

    @contextmanager
    def _transaction(self, *, commit: bool = True) -> Generator[Session, None, None]:
        try:
            get_session_factory()
        except RuntimeError as exc:
            raise StorageError(str(exc)) from exc
        try:
            with session_scope(commit=commit) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Calendar persistence failure")
            raise StorageError("The calendar store could not complete the operation.") from exc

    @contextmanager
    def _write(
        self,
        student_id: str,
        *,
        bulk: bool,
        expected_version: Optional[int] = None,
    ) -> Generator[_WriteContext, None, None]:
        with self._locks.hold(student_id, wait=not bulk):
            with self._transaction() as session:
                version = self._repo.ensure_calendar(session, student_id)
                if expected_version is not None and expected_version != version:
                    raise ConcurrentModification(
                        f"Calendar for student '{student_id}' is at version {version}, not {expected_version}.",
                        details={
                            "student_id": student_id,
                            "expected_version": expected_version,
                            "current_version": version,
                        },
                    )
                context = _WriteContext(session=session, version=version)
                yield context
                if context.changed:
                    for event_type, payload in context.audit:
                        self._repo.record_audit(session, student_id, event_type, payload)
                    context.version = self._repo.bump_version(session, student_id, version)

    def _student_of(self, event_id: str) -> str:
        with self._transaction(commit=False) as session:
            return self._repo.require(session, event_id).student_id

    def _weekly_load_errors(
        self,
        session: Session,
        student_id: str,
        before: Sequence[CalendarEvent],
        after: Sequence[CalendarEvent],
        changed_ids: Set[str],
        *,
        resized: Iterable[str] = (),
    ) -> None:
        """Reject layouts that push a course's busiest 7-day window past its cap plus slack.

        A window that was already over the limit before the change may stay
        there but may not grow. A lone session longer than the cap is allowed.
        """
        caps = {
            pref.course_id: pref.constraints.weekly_cap_minutes
            for pref in self._repo.list_preferences(session, student_id)
        }
        courses = sorted({event.course_id for event in after if event.event_id in changed_ids})
        for course_id in courses:
            cap = caps.get(course_id)
            if cap is None:
                continue
            previous = max_window_load([event for event in before if event.course_id == course_id])
            proposed = max_window_load([event for event in after if event.course_id == course_id], shared_only=True)
            allowed = max(cap * (1.0 + self._slack), previous)
            if proposed <= allowed:
                continue
            details = {
                "student_id": student_id,
                "course_id": course_id,
                "weekly_cap_minutes": cap,
                "window_minutes": proposed,
                "event_ids": sorted(changed_ids),
            }
            message = (
                f"The change would plan {proposed} minutes of '{course_id}' within 7 days; "
                f"the weekly limit is {int(allowed)} minutes."
            )
            if changed_ids.intersection(resized):
                raise InvalidDuration(message, details=details)
            raise OverlapViolation(message, details=details)

    # Reads

    def get_event(self, event_id: str) -> CalendarEvent:
        with self._transaction(commit=False) as session:
            return self._repo.require(session, event_id)

    def list_events(self, student_id: str) -> List[CalendarEvent]:
        with self._transaction(commit=False) as session:
            return self._repo.list_for_student(session, student_id)

    def get_events_by_date_range(self, filters: EventFilters | Mapping[str, Any]) -> List[CalendarEvent]:
        if not isinstance(filters, EventFilters):
            try:
                filters = EventFilters.model_validate(dict(filters))
            except ValidationError as exc:
                raise InvalidConstraints(f"Invalid event filters: {exc.errors()[0]['msg']}") from exc
        with self._transaction(commit=False) as session:
            return self._repo.query(session, filters)

    def get_upcoming_events(
        self,
        student_id: str,
        limit: int = 5,
        *,
        now: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        if limit < 1:
            return []
        moment = ensure_utc(now) if now is not None else self._now()
        with self._transaction(commit=False) as session:
            return self._repo.upcoming(session, student_id, moment, limit)

    def get_preferences(self, student_id: str) -> List[SchedulePreferences]:
        with self._transaction(commit=False) as session:
            return self._repo.list_preferences(session, student_id)

    def current_version(self, student_id: str) -> int:
        with self._transaction(commit=False) as session:
            return self._repo.current_version(session, student_id)

    def recent_audit_events(self, student_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        with self._transaction(commit=False) as session:
            return self._repo.recent_audit_events(session, student_id, limit)

    def get_study_stats(
        self,
        student_id: str,
        *,
        now: Optional[datetime] = None,
        window_days: Optional[int] = None,
        zone: Optional[tzinfo] = None,
    ) -> StudyStats:
        with self._transaction(commit=False) as session:
            events = self._repo.list_for_student(session, student_id)
            sessions = self._sessions.list_for_student(session, student_id)
            if zone is None:
                preferences = self._repo.list_preferences(session, student_id)
                zone = preferences[0].constraints.zone if preferences else timezone.utc
        return compute_study_stats(
            student_id,
            events,
            now=now if now is not None else self._now(),
            window_days=window_days or self._window_days,
            zone=zone,
            sessions=sessions,
        )

    # Point mutations

    def mark_event_complete(
        self,
        event_id: str,
        actual_minutes: Any,
        *,
        completed_at: Optional[datetime] = None,
        strict: bool = False,
    ) -> CompletionResult:
        minutes = _validate_minutes(actual_minutes)
        student_id = self._student_of(event_id)
        with self._write(student_id, bulk=False) as context:
            event = self._repo.require(context.session, event_id)
            if event.completed:
                if strict:
                    raise AlreadyCompleted(
                        f"Calendar event '{event_id}' is already completed.",
                        details={"event_id": event_id},
                    )
                return CompletionResult(event=event, already_completed=True)
            finished_at = ensure_utc(completed_at) if completed_at is not None else self._now()
            (updated,) = self._repo.apply_changes(
                context.session,
                {event_id: {"completed": True, "actual_minutes": minutes, "completed_at": finished_at}},
            )
            context.changed = True
            context.audit.append(("event_completed", {"event_id": event_id, "actual_minutes": minutes}))
        logger.info("Marked %s complete for %s (%d min)", event_id, student_id, minutes)
        return CompletionResult(event=updated, already_completed=False)

    def reschedule_event(
        self,
        event_id: str,
        new_date: datetime,
        cascade: bool = False,
        *,
        expected_version: Optional[int] = None,
    ) -> RescheduleResult:
        target_at = ensure_utc(new_date)
        student_id = self._student_of(event_id)
        with self._write(student_id, bulk=cascade, expected_version=expected_version) as context:
            events = self._repo.list_for_student(context.session, student_id)
            target = next((event for event in events if event.event_id == event_id), None)
            if target is None:
                raise NotFound(f"Calendar event '{event_id}' does not exist.", details={"event_id": event_id})
            if target.completed:
                raise AlreadyCompleted(
                    "Completed sessions cannot be rescheduled.",
                    details={"event_id": event_id},
                )
            delta = target_at - target.scheduled_at
            moving = [target]
            if cascade:
                moving.extend(
                    event
                    for event in events
                    if not event.completed
                    and event.event_id != event_id
                    and event.scheduled_at > target.scheduled_at
                )
            if delta == timedelta(0):
                return RescheduleResult(target=target, moved=[], delta=delta, cascade=cascade, version=context.version)

            proposed = {
                event.event_id: event.model_copy(update={"scheduled_at": event.scheduled_at + delta})
                for event in moving
            }
            layout = [proposed.get(event.event_id, event) for event in events]
            _layout_errors(student_id, layout, set(proposed))
            self._weekly_load_errors(context.session, student_id, events, layout, set(proposed))

            moved = self._repo.apply_changes(
                context.session,
                {
                    event.event_id: {
                        "scheduled_at": event.scheduled_at + delta,
                        "rescheduled_from": event.scheduled_at,
                        "reschedule_count": event.reschedule_count + 1,
                    }
                    for event in moving
                },
            )
            context.changed = True
            context.audit.append(
                (
                    "event_rescheduled",
                    {
                        "event_id": event_id,
                        "cascade": cascade,
                        "delta_seconds": delta.total_seconds(),
                        "moved": len(moved),
                    },
                )
            )
        moved.sort(key=lambda event: event.scheduled_at)
        updated_target = next(event for event in moved if event.event_id == event_id)
        logger.info(
            "Rescheduled %s for %s by %s (cascade=%s, moved=%d)",
            event_id,
            student_id,
            delta,
            cascade,
            len(moved),
        )
        return RescheduleResult(
            target=updated_target,
            moved=moved,
            delta=delta,
            cascade=cascade,
            version=context.version,
        )

    def update_event(
        self,
        event_id: str,
        patch: EventPatch | Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> CalendarEvent:
        if not isinstance(patch, EventPatch):
            try:
                patch = EventPatch.model_validate(dict(patch))
            except ValidationError as exc:
                fields = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
                message = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
                if "planned_minutes" in fields:
                    raise InvalidDuration(f"Invalid event update: {message}") from exc
                raise InvalidConstraints(f"Invalid event update: {message}") from exc
        if patch.is_empty():
            raise InvalidConstraints(
                "An event update needs at least one of scheduled_at, planned_minutes or estimated_difficulty."
            )
        student_id = self._student_of(event_id)
        with self._write(student_id, bulk=False, expected_version=expected_version) as context:
            events = self._repo.list_for_student(context.session, student_id)
            current = next((event for event in events if event.event_id == event_id), None)
            if current is None:
                raise NotFound(f"Calendar event '{event_id}' does not exist.", details={"event_id": event_id})
            changes: Dict[str, Any] = {
                key: value
                for key, value in patch.model_dump(exclude_none=True).items()
                if getattr(current, key) != value
            }
            if not changes:
                return current
            if current.completed and "scheduled_at" in changes:
                raise AlreadyCompleted(
                    "Completed sessions cannot be moved.",
                    details={"event_id": event_id},
                )
            candidate = current.model_copy(update=changes)
            layout = [candidate if event.event_id == event_id else event for event in events]
            _layout_errors(student_id, layout, {event_id})
            resized = {event_id} if "planned_minutes" in changes else set()
            self._weekly_load_errors(context.session, student_id, events, layout, {event_id}, resized=resized)
            if "scheduled_at" in changes:
                changes["rescheduled_from"] = current.scheduled_at
                changes["reschedule_count"] = current.reschedule_count + 1
            (updated,) = self._repo.apply_changes(context.session, {event_id: changes})
            context.changed = True
            context.audit.append(("event_updated", {"event_id": event_id, "fields": sorted(patch.model_dump(exclude_none=True))}))
        return updated

    def delete_event(self, event_id: str, *, expected_version: Optional[int] = None) -> CalendarEvent:
        student_id = self._student_of(event_id)
        with self._write(student_id, bulk=False, expected_version=expected_version) as context:
            event = self._repo.require(context.session, event_id)
            self._repo.delete_one(context.session, event_id)
            self._sessions.detach_deleted_events(context.session, student_id)
            context.changed = True
            context.audit.append(("event_deleted", {"event_id": event_id, "unit_id": event.unit_id}))
        return event

    # Study sessions

    def start_study_session(
        self,
        student_id: str,
        event_id: Optional[str] = None,
        *,
        started_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> StudySession:
        with self._transaction() as session:
            if event_id is not None:
                event = self._repo.get(session, event_id)
                if event is None or event.student_id != student_id:
                    raise NotFound(
                        f"Calendar event '{event_id}' does not exist for student '{student_id}'.",
                        details={"event_id": event_id, "student_id": student_id},
                    )
            started = self._sessions.insert(
                session,
                StudySession(
                    student_id=student_id,
                    event_id=event_id,
                    started_at=ensure_utc(started_at) if started_at is not None else self._now(),
                    notes=notes,
                ),
            )
        logger.info("Started study session %s for %s (event=%s)", started.session_id, student_id, event_id)
        return started

    def end_study_session(
        self,
        session_id: str,
        *,
        completed: bool = True,
        ended_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> SessionEndResult:
        """Close a session; a completed session also completes its pending event.

        Duration is whole minutes between start and end, rounded down. The
        linked event is credited with at least one minute.
        """
        with self._transaction(commit=False) as session:
            current = self._sessions.require(session, session_id)
        if not current.is_open:
            raise AlreadyCompleted(
                f"Study session '{session_id}' has already ended.",
                details={"session_id": session_id},
            )
        finished_at = ensure_utc(ended_at) if ended_at is not None else self._now()
        if finished_at < current.started_at:
            raise InvalidDuration(
                "A study session cannot end before it started.",
                details={"session_id": session_id, "started_at": current.started_at.isoformat()},
            )
        minutes = int((finished_at - current.started_at).total_seconds() // 60)
        closing = {"ended_at": finished_at, "duration_minutes": minutes, "completed": completed, "notes": notes}

        if not completed or current.event_id is None:
            with self._transaction() as session:
                ended = self._sessions.finish(session, session_id, **closing)
            return SessionEndResult(session=ended)

        with self._write(current.student_id, bulk=False) as context:
            ended = self._sessions.finish(context.session, session_id, **closing)
            event = self._repo.get(context.session, current.event_id)
            if event is not None and not event.completed:
                credited = max(1, minutes)
                (event,) = self._repo.apply_changes(
                    context.session,
                    {event.event_id: {"completed": True, "actual_minutes": credited, "completed_at": finished_at}},
                )
                context.changed = True
                context.audit.append(
                    (
                        "event_completed",
                        {"event_id": event.event_id, "actual_minutes": credited, "session_id": session_id},
                    )
                )
        logger.info("Ended study session %s after %d min", session_id, minutes)
        return SessionEndResult(session=ended, event=event)

    def list_study_sessions(self, student_id: str, *, since: Optional[datetime] = None) -> List[StudySession]:
        with self._transaction(commit=False) as session:
            return self._sessions.list_for_student(
                session,
                student_id,
                since=ensure_utc(since) if since is not None else None,
            )

    # Bulk mutations

    def delete_course_events(
        self,
        student_id: str,
        course_id: str,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        with self._write(student_id, bulk=True, expected_version=expected_version) as context:
            removed = self._repo.delete_many(context.session, student_id, course_id=course_id)
            self._repo.delete_preferences(context.session, student_id, course_id)
            self._sessions.detach_deleted_events(context.session, student_id)
            context.changed = True
            context.audit.append(("course_events_deleted", {"course_id": course_id, "removed": removed}))
        logger.info("Removed %d events of %s for %s", removed, course_id, student_id)
        return removed

    def insert_generated(
        self,
        result: GenerationResult,
        constraints: OnboardingConstraints,
        *,
        expected_version: Optional[int] = None,
    ) -> Tuple[List[CalendarEvent], int]:
        """Persist a generation run, replacing the course's pending events."""
        student_id = result.student_id
        with self._write(student_id, bulk=True, expected_version=expected_version) as context:
            replaced = self._repo.delete_many(
                context.session,
                student_id,
                course_id=result.course_id,
                completed=False,
            )
            remaining = self._repo.list_for_student(context.session, student_id)
            new_ids = {event.event_id for event in result.events}
            _layout_errors(student_id, [*remaining, *result.events], new_ids)
            stored = self._repo.insert_many(context.session, result.events)
            if replaced:
                self._sessions.detach_deleted_events(context.session, student_id)
            self._repo.save_preferences(
                context.session,
                SchedulePreferences(
                    student_id=student_id,
                    course_id=result.course_id,
                    constraints=constraints,
                    target_completion_at=result.target_completion_at,
                    generated_at=self._now(),
                ),
            )
            context.changed = True
            context.audit.append(
                (
                    "calendar_generated",
                    {"course_id": result.course_id, "inserted": len(stored), "replaced": replaced},
                )
            )
        return stored, context.version

    def apply_mutations(
        self,
        student_id: str,
        mutations: Iterable[ScheduleMutation],
        *,
        expected_version: Optional[int] = None,
        reason: str = "adaptation",
    ) -> Tuple[List[CalendarEvent], int]:
        """Apply reschedule/duration mutations to pending events in one transaction."""
        batch = list(mutations)
        with self._write(student_id, bulk=True, expected_version=expected_version) as context:
            if not batch:
                return [], context.version
            events = self._repo.list_for_student(context.session, student_id)
            by_id = {event.event_id: event for event in events}
            changes: Dict[str, Dict[str, Any]] = {}
            for mutation in batch:
                event = by_id.get(mutation.event_id)
                if event is None:
                    raise NotFound(
                        f"Calendar event '{mutation.event_id}' does not exist.",
                        details={"event_id": mutation.event_id},
                    )
                if event.completed:
                    raise AlreadyCompleted(
                        "Adjustments only apply to sessions that are not yet completed.",
                        details={"event_id": mutation.event_id},
                    )
                entry = changes.setdefault(mutation.event_id, {})
                if mutation.action == "reschedule" and mutation.scheduled_at is not None:
                    entry["scheduled_at"] = ensure_utc(mutation.scheduled_at)
                elif mutation.action == "change_duration" and mutation.planned_minutes is not None:
                    entry["planned_minutes"] = mutation.planned_minutes

            layout = [
                by_id[event.event_id].model_copy(update=changes[event.event_id])
                if event.event_id in changes
                else event
                for event in events
            ]
            _layout_errors(student_id, layout, set(changes))
            resized = {event_id for event_id, entry in changes.items() if "planned_minutes" in entry}
            self._weekly_load_errors(context.session, student_id, events, layout, set(changes), resized=resized)
            for event_id, entry in changes.items():
                original = by_id[event_id]
                if "scheduled_at" in entry and entry["scheduled_at"] != original.scheduled_at:
                    entry["rescheduled_from"] = original.scheduled_at
                    entry["reschedule_count"] = original.reschedule_count + 1
            updated = self._repo.apply_changes(context.session, changes)
            context.changed = True
            context.audit.append((reason, {"mutations": len(batch), "events": len(changes)}))
        updated.sort(key=lambda event: event.scheduled_at)
        return updated, context.version


__all__ = ["CalendarStore"]
