"""Database-backed study session repository."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.models import CalendarEventModel, StudySessionModel
from ..errors import NotFound
from ..models import StudySession


class StudySessionRepository:
    def get(self, session: Session, session_id: str) -> Optional[StudySession]:
        model = session.get(StudySessionModel, session_id)
        return self._to_domain(model) if model is not None else None

    def require(self, session: Session, session_id: str) -> StudySession:
        found = self.get(session, session_id)
        if found is None:
            raise NotFound(f"Study session '{session_id}' does not exist.", details={"session_id": session_id})
        return found

    def insert(self, session: Session, study_session: StudySession) -> StudySession:
        model = StudySessionModel(
            id=study_session.session_id,
            student_id=study_session.student_id,
            event_id=study_session.event_id,
            started_at=study_session.started_at,
            ended_at=study_session.ended_at,
            duration_minutes=study_session.duration_minutes,
            completed=study_session.completed,
            notes=study_session.notes,
            created_at=study_session.created_at,
        )
        session.add(model)
        session.flush()
        return self._to_domain(model)

    def finish(
        self,
        session: Session,
        session_id: str,
        *,
        ended_at: datetime,
        duration_minutes: int,
        completed: bool,
        notes: Optional[str] = None,
    ) -> StudySession:
        model = session.get(StudySessionModel, session_id)
        if model is None:
            raise NotFound(f"Study session '{session_id}' does not exist.", details={"session_id": session_id})
        model.ended_at = ended_at
        model.duration_minutes = duration_minutes
        model.completed = completed
        if notes is not None:
            model.notes = notes
        session.flush()
        return self._to_domain(model)

    def list_for_student(
        self,
        session: Session,
        student_id: str,
        *,
        since: Optional[datetime] = None,
    ) -> List[StudySession]:
        stmt = select(StudySessionModel).where(StudySessionModel.student_id == student_id)
        if since is not None:
            stmt = stmt.where(StudySessionModel.started_at >= since)
        stmt = stmt.order_by(StudySessionModel.started_at.desc())
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def detach_deleted_events(self, session: Session, student_id: str) -> int:
        """Clear ``event_id`` on sessions whose event no longer exists."""
        surviving = select(CalendarEventModel.id).where(CalendarEventModel.student_id == student_id)
        stmt = (
            update(StudySessionModel)
            .where(
                StudySessionModel.student_id == student_id,
                StudySessionModel.event_id.is_not(None),
                StudySessionModel.event_id.not_in(surviving),
            )
            .values(event_id=None)
            .execution_options(synchronize_session=False)
        )
        return int(session.execute(stmt).rowcount or 0)

    @staticmethod
    def _to_domain(model: StudySessionModel) -> StudySession:
        return StudySession(
            session_id=model.id,
            student_id=model.student_id,
            event_id=model.event_id,
            started_at=model.started_at,
            ended_at=model.ended_at,
            duration_minutes=model.duration_minutes,
            completed=model.completed,
            notes=model.notes,
            created_at=model.created_at,
        )


study_sessions = StudySessionRepository()

__all__ = ["StudySessionRepository", "study_sessions"]
