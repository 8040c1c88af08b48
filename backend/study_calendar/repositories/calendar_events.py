"""Database-backed calendar event repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..db.models import (
    CalendarAuditEventModel,
    CalendarEventModel,
    SchedulePreferenceModel,
    StudentCalendarModel,
)
from ..errors import ConcurrentModification, NotFound
from ..models import CalendarEvent, EventFilters, OnboardingConstraints, SchedulePreferences

_EVENT_FIELDS = (
    "scheduled_at",
    "planned_minutes",
    "estimated_difficulty",
    "completed",
    "actual_minutes",
    "completed_at",
    "rescheduled_from",
    "reschedule_count",
)


class CalendarEventRepository:
    """Session-scoped persistence helpers; callers own the transaction."""

    # Events

    def get(self, session: Session, event_id: str) -> CalendarEvent | None:
        model = session.get(CalendarEventModel, event_id)
        if model is None:
            return None
        return self._to_domain(model)

    def require(self, session: Session, event_id: str) -> CalendarEvent:
        event = self.get(session, event_id)
        if event is None:
            raise NotFound(f"Calendar event '{event_id}' does not exist.", details={"event_id": event_id})
        return event

    def list_for_student(self, session: Session, student_id: str) -> List[CalendarEvent]:
        stmt = (
            select(CalendarEventModel)
            .where(CalendarEventModel.student_id == student_id)
            .order_by(CalendarEventModel.scheduled_at, CalendarEventModel.sequence_position)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def query(self, session: Session, filters: EventFilters) -> List[CalendarEvent]:
        stmt = select(CalendarEventModel).where(CalendarEventModel.student_id == filters.student_id)
        if filters.start is not None:
            stmt = stmt.where(CalendarEventModel.scheduled_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(CalendarEventModel.scheduled_at <= filters.end)
        if filters.completed is not None:
            stmt = stmt.where(CalendarEventModel.completed.is_(filters.completed))
        if filters.unit_id is not None:
            stmt = stmt.where(CalendarEventModel.unit_id == filters.unit_id)
        if filters.course_id is not None:
            stmt = stmt.where(CalendarEventModel.course_id == filters.course_id)
        stmt = stmt.order_by(CalendarEventModel.scheduled_at, CalendarEventModel.sequence_position)
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def upcoming(self, session: Session, student_id: str, now: datetime, limit: int) -> List[CalendarEvent]:
        stmt = (
            select(CalendarEventModel)
            .where(
                CalendarEventModel.student_id == student_id,
                CalendarEventModel.completed.is_(False),
                CalendarEventModel.scheduled_at >= now,
            )
            .order_by(CalendarEventModel.scheduled_at, CalendarEventModel.sequence_position)
            .limit(limit)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def insert_many(self, session: Session, events: Iterable[CalendarEvent]) -> List[CalendarEvent]:
        models = [self._to_model(event) for event in events]
        session.add_all(models)
        session.flush()
        return [self._to_domain(model) for model in models]

    def apply_changes(self, session: Session, changes: Mapping[str, Mapping[str, Any]]) -> List[CalendarEvent]:
        """Write per-event field changes and return the updated events."""
        updated: List[CalendarEvent] = []
        for event_id, values in changes.items():
            model = session.get(CalendarEventModel, event_id)
            if model is None:
                raise NotFound(f"Calendar event '{event_id}' does not exist.", details={"event_id": event_id})
            for field, value in values.items():
                if field not in _EVENT_FIELDS:
                    raise ValueError(f"Field '{field}' cannot be changed on a calendar event.")
                setattr(model, field, value)
            model.updated_at = datetime.now(timezone.utc)
            updated.append(model)
        session.flush()
        return [self._to_domain(model) for model in updated]

    def delete_one(self, session: Session, event_id: str) -> bool:
        model = session.get(CalendarEventModel, event_id)
        if model is None:
            return False
        session.delete(model)
        session.flush()
        return True

    def delete_many(
        self,
        session: Session,
        student_id: str,
        *,
        course_id: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> int:
        stmt = delete(CalendarEventModel).where(CalendarEventModel.student_id == student_id)
        if course_id is not None:
            stmt = stmt.where(CalendarEventModel.course_id == course_id)
        if completed is not None:
            stmt = stmt.where(CalendarEventModel.completed.is_(completed))
        result = session.execute(stmt.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)

    # Version row

    def current_version(self, session: Session, student_id: str) -> int:
        model = session.get(StudentCalendarModel, student_id)
        return model.version if model is not None else 0

    def ensure_calendar(self, session: Session, student_id: str) -> int:
        model = session.get(StudentCalendarModel, student_id)
        if model is None:
            model = StudentCalendarModel(student_id=student_id, version=0)
            session.add(model)
            session.flush()
        return model.version

    def bump_version(self, session: Session, student_id: str, expected: int) -> int:
        stmt = (
            update(StudentCalendarModel)
            .where(
                StudentCalendarModel.student_id == student_id,
                StudentCalendarModel.version == expected,
            )
            .values(version=expected + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"Calendar for student '{student_id}' changed during the update.",
                details={"student_id": student_id, "expected_version": expected},
            )
        return expected + 1

    # Preferences

    def save_preferences(self, session: Session, preferences: SchedulePreferences) -> None:
        stmt = select(SchedulePreferenceModel).where(
            SchedulePreferenceModel.student_id == preferences.student_id,
            SchedulePreferenceModel.course_id == preferences.course_id,
        )
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            model = SchedulePreferenceModel(student_id=preferences.student_id, course_id=preferences.course_id)
            session.add(model)
        model.constraints = preferences.constraints.model_dump(mode="json")
        model.target_completion_at = preferences.target_completion_at
        model.generated_at = preferences.generated_at
        session.flush()

    def list_preferences(self, session: Session, student_id: str) -> List[SchedulePreferences]:
        stmt = (
            select(SchedulePreferenceModel)
            .where(SchedulePreferenceModel.student_id == student_id)
            .order_by(SchedulePreferenceModel.course_id)
        )
        return [
            SchedulePreferences(
                student_id=model.student_id,
                course_id=model.course_id,
                constraints=OnboardingConstraints.model_validate(model.constraints),
                target_completion_at=model.target_completion_at,
                generated_at=model.generated_at,
            )
            for model in session.execute(stmt).scalars()
        ]

    def delete_preferences(self, session: Session, student_id: str, course_id: str) -> None:
        session.execute(
            delete(SchedulePreferenceModel)
            .where(
                SchedulePreferenceModel.student_id == student_id,
                SchedulePreferenceModel.course_id == course_id,
            )
            .execution_options(synchronize_session=False)
        )

    # Audit

    def record_audit(self, session: Session, student_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        session.add(
            CalendarAuditEventModel(
                student_id=student_id,
                event_type=event_type,
                payload=payload,
                actor="system",
            )
        )

    def recent_audit_events(self, session: Session, student_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        stmt = (
            select(CalendarAuditEventModel)
            .where(CalendarAuditEventModel.student_id == student_id)
            .order_by(CalendarAuditEventModel.created_at.desc(), CalendarAuditEventModel.id.desc())
            .limit(limit)
        )
        return [
            {
                "event_type": model.event_type,
                "payload": dict(model.payload or {}),
                "actor": model.actor,
                "created_at": model.created_at,
            }
            for model in session.execute(stmt).scalars()
        ]

    # Mapping

    @staticmethod
    def _to_model(event: CalendarEvent) -> CalendarEventModel:
        return CalendarEventModel(
            id=event.event_id,
            student_id=event.student_id,
            course_id=event.course_id,
            unit_id=event.unit_id,
            sequence_position=event.sequence_position,
            scheduled_at=event.scheduled_at,
            planned_minutes=event.planned_minutes,
            estimated_difficulty=event.estimated_difficulty,
            completed=event.completed,
            actual_minutes=event.actual_minutes,
            completed_at=event.completed_at,
            rescheduled_from=event.rescheduled_from,
            reschedule_count=event.reschedule_count,
            created_at=event.created_at,
            updated_at=event.updated_at,
        )

    @staticmethod
    def _to_domain(model: CalendarEventModel) -> CalendarEvent:
        return CalendarEvent(
            event_id=model.id,
            student_id=model.student_id,
            course_id=model.course_id,
            unit_id=model.unit_id,
            sequence_position=model.sequence_position,
            scheduled_at=model.scheduled_at,
            planned_minutes=model.planned_minutes,
            estimated_difficulty=model.estimated_difficulty,
            completed=model.completed,
            actual_minutes=model.actual_minutes,
            completed_at=model.completed_at,
            rescheduled_from=model.rescheduled_from,
            reschedule_count=model.reschedule_count,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


calendar_events = CalendarEventRepository()

__all__ = ["CalendarEventRepository", "calendar_events"]
