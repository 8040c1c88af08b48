"""Caller-facing calendar operations wiring catalog, generator, store, and scheduler."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from .adaptive_scheduler import AdaptiveScheduler
from .calendar_generator import CalendarGenerator
from .calendar_store import CalendarStore
from .catalog import ContentCatalog, DatabaseContentCatalog
from .config import Settings, get_settings
from .errors import CalendarError, ConcurrentModification, InvalidConstraints, OverlapViolation
from .models import (
    AdaptationSuggestion,
    CalendarEvent,
    CompletionResult,
    EventFilters,
    EventPatch,
    GenerationResult,
    OnboardingConstraints,
    RescheduleResult,
    SessionEndResult,
    StudySession,
    StudyStats,
    ensure_utc,
    parse_constraints,
)
from .telemetry import emit_event

logger = logging.getLogger(__name__)


class CalendarEngine:
    def __init__(
        self,
        *,
        catalog: Optional[ContentCatalog] = None,
        store: Optional[CalendarStore] = None,
        generator: Optional[CalendarGenerator] = None,
        scheduler: Optional[AdaptiveScheduler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.catalog: ContentCatalog = catalog or DatabaseContentCatalog()
        self.store = store or CalendarStore(settings=self._settings)
        self.generator = generator or CalendarGenerator(session_break_minutes=self._settings.session_break_minutes)
        self.scheduler = scheduler or AdaptiveScheduler(self.store, settings=self._settings)

    def _conflict(self, operation: str, student_id: Optional[str], exc: CalendarError) -> None:
        emit_event(
            "calendar_conflict",
            operation=operation,
            student_id=student_id,
            code=exc.code,
            message=exc.message,
        )

    # Generation

    def generate(
        self,
        constraints: OnboardingConstraints | Mapping[str, Any],
        *,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> GenerationResult:
        """Build and persist a calendar, replacing the course's pending sessions."""
        parsed = parse_constraints(constraints)
        start = time.perf_counter()
        try:
            units = self.catalog.get_units(parsed.course_id)
            existing = self.store.list_events(parsed.student_id)
            finished_units = {
                event.unit_id for event in existing if event.course_id == parsed.course_id and event.completed
            }
            remaining_units = [unit for unit in units if unit.unit_id not in finished_units]
            if not remaining_units:
                raise InvalidConstraints(
                    f"Every unit of course '{parsed.course_id}' is already completed.",
                    details={"course_id": parsed.course_id},
                )
            kept = [event for event in existing if event.course_id != parsed.course_id or event.completed]
            result = self.generator.generate(parsed, remaining_units, now=now, existing=kept)
            stored, version = self.store.insert_generated(result, parsed, expected_version=expected_version)
        except CalendarError as exc:
            duration_ms = (time.perf_counter() - start) * 1000.0
            emit_event(
                "calendar_generation",
                student_id=parsed.student_id,
                course_id=parsed.course_id,
                status="error",
                duration_ms=round(duration_ms, 2),
                event_count=0,
                error=exc.message,
                exception_type=exc.__class__.__name__,
            )
            if isinstance(exc, (OverlapViolation, ConcurrentModification)):
                self._conflict("generate", parsed.student_id, exc)
            logger.warning("Calendar generation failed for %s/%s: %s", parsed.student_id, parsed.course_id, exc)
            raise
        duration_ms = (time.perf_counter() - start) * 1000.0
        emit_event(
            "calendar_generation",
            student_id=parsed.student_id,
            course_id=parsed.course_id,
            status="success",
            duration_ms=round(duration_ms, 2),
            event_count=len(stored),
            total_minutes=result.total_minutes,
            sessions_per_week=result.sessions_per_week,
            planned_span_weeks=result.planned_span_weeks,
            warning_codes=[warning.code for warning in result.warnings],
            version=version,
        )
        return result.model_copy(update={"events": stored, "total_events": len(stored)})

    # Event operations

    def mark_complete(
        self,
        event_id: str,
        actual_minutes: Any,
        *,
        completed_at: Optional[datetime] = None,
        strict: bool = False,
    ) -> CompletionResult:
        result = self.store.mark_event_complete(event_id, actual_minutes, completed_at=completed_at, strict=strict)
        event = result.event
        emit_event(
            "event_completed",
            student_id=event.student_id,
            event_id=event.event_id,
            unit_id=event.unit_id,
            planned_minutes=event.planned_minutes,
            actual_minutes=event.actual_minutes,
            already_completed=result.already_completed,
        )
        return result

    def reschedule(
        self,
        event_id: str,
        new_date: datetime,
        cascade: bool = False,
        *,
        expected_version: Optional[int] = None,
    ) -> RescheduleResult:
        try:
            result = self.store.reschedule_event(event_id, new_date, cascade, expected_version=expected_version)
        except (OverlapViolation, ConcurrentModification) as exc:
            self._conflict("reschedule", exc.details.get("student_id"), exc)
            raise
        emit_event(
            "event_rescheduled",
            student_id=result.target.student_id,
            event_id=event_id,
            cascade=cascade,
            moved_count=len(result.moved),
            delta=result.delta,
            version=result.version,
        )
        return result

    def update(
        self,
        event_id: str,
        patch: EventPatch | Mapping[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> CalendarEvent:
        try:
            return self.store.update_event(event_id, patch, expected_version=expected_version)
        except (OverlapViolation, ConcurrentModification) as exc:
            self._conflict("update", exc.details.get("student_id"), exc)
            raise

    def delete(self, event_id: str, *, expected_version: Optional[int] = None) -> CalendarEvent:
        return self.store.delete_event(event_id, expected_version=expected_version)

    def query(self, filters: EventFilters | Mapping[str, Any]) -> List[CalendarEvent]:
        return self.store.get_events_by_date_range(filters)

    def upcoming(self, student_id: str, limit: int = 5, *, now: Optional[datetime] = None) -> List[CalendarEvent]:
        return self.store.get_upcoming_events(student_id, limit, now=now)

    def stats(self, student_id: str, *, now: Optional[datetime] = None) -> StudyStats:
        return self.store.get_study_stats(student_id, now=now)

    def abandon_course(
        self,
        student_id: str,
        course_id: str,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        try:
            return self.store.delete_course_events(student_id, course_id, expected_version=expected_version)
        except ConcurrentModification as exc:
            self._conflict("abandon_course", student_id, exc)
            raise

    # Study sessions

    def start_session(
        self,
        student_id: str,
        event_id: Optional[str] = None,
        *,
        started_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> StudySession:
        started = self.store.start_study_session(student_id, event_id, started_at=started_at, notes=notes)
        emit_event(
            "study_session_started",
            student_id=student_id,
            session_id=started.session_id,
            event_id=event_id,
        )
        return started

    def end_session(
        self,
        session_id: str,
        *,
        completed: bool = True,
        ended_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> SessionEndResult:
        result = self.store.end_study_session(session_id, completed=completed, ended_at=ended_at, notes=notes)
        emit_event(
            "study_session_ended",
            student_id=result.session.student_id,
            session_id=session_id,
            duration_minutes=result.session.duration_minutes,
            completed=completed,
            event_completed=bool(result.event and result.event.completed),
        )
        return result

    def sessions(self, student_id: str, *, since: Optional[datetime] = None) -> List[StudySession]:
        return self.store.list_study_sessions(student_id, since=since)

    # Adaptation

    def analyze(
        self,
        student_id: str,
        *,
        now: Optional[datetime] = None,
        strict: bool = False,
    ) -> AdaptationSuggestion:
        moment = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
        suggestion = self.scheduler.analyze_and_adapt(student_id, now=moment, strict=strict)
        stats = suggestion.stats
        emit_event(
            "adaptation_analyzed",
            student_id=student_id,
            classification=suggestion.classification,
            urgency=suggestion.urgency,
            confidence=suggestion.confidence,
            mutation_count=len(suggestion.mutations),
            span_extended=suggestion.span_extended,
            insufficient_history=suggestion.insufficient_history,
            completion_rate=stats.completion_rate if stats else None,
            based_on_version=suggestion.based_on_version,
        )
        return suggestion

    def apply_adaptation(self, suggestion: AdaptationSuggestion) -> List[CalendarEvent]:
        try:
            updated, version = self.scheduler.apply_suggestion(suggestion)
        except (OverlapViolation, ConcurrentModification) as exc:
            self._conflict("apply_adaptation", suggestion.student_id, exc)
            raise
        emit_event(
            "adaptation_applied",
            student_id=suggestion.student_id,
            classification=suggestion.classification,
            mutation_count=len(suggestion.mutations),
            updated_count=len(updated),
            version=version,
        )
        return updated


__all__ = ["CalendarEngine"]
