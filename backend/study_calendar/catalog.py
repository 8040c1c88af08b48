"""Content catalog adapters returning ordered learning-unit metadata."""

from __future__ import annotations

import logging
from threading import RLock
from typing import Dict, Iterable, List, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db.models import LearningUnitModel
from .db.session import session_scope
from .errors import CourseNotFound, StorageError
from .models import LearningUnit

logger = logging.getLogger(__name__)


class ContentCatalog(Protocol):
    def get_units(self, course_id: str) -> List[LearningUnit]:
        ...


def _ordered(units: Iterable[LearningUnit]) -> List[LearningUnit]:
    return sorted(units, key=lambda unit: (unit.sequence_position, unit.unit_id))


class InMemoryContentCatalog:
    """Process-local catalog used by tests and embedded callers."""

    def __init__(self, units: Iterable[LearningUnit] = ()) -> None:
        self._lock = RLock()
        self._courses: Dict[str, List[LearningUnit]] = {}
        self.register(units)

    def register(self, units: Iterable[LearningUnit]) -> None:
        with self._lock:
            for unit in units:
                course = self._courses.setdefault(unit.course_id, [])
                course[:] = [existing for existing in course if existing.unit_id != unit.unit_id]
                course.append(unit)

    def remove_course(self, course_id: str) -> None:
        with self._lock:
            self._courses.pop(course_id, None)

    def get_units(self, course_id: str) -> List[LearningUnit]:
        with self._lock:
            units = self._courses.get(course_id)
            if not units:
                raise CourseNotFound(f"Course '{course_id}' is not in the catalog.", details={"course_id": course_id})
            return [unit.model_copy() for unit in _ordered(units)]


def write_course_units(session: Session, course_id: str, units: Iterable[LearningUnit]) -> int:
    """Replace the stored units of ``course_id`` inside the caller's transaction."""
    payload = [unit for unit in units if unit.course_id == course_id]
    session.execute(delete(LearningUnitModel).where(LearningUnitModel.course_id == course_id))
    session.add_all(
        LearningUnitModel(
            course_id=unit.course_id,
            unit_id=unit.unit_id,
            title=unit.title,
            sequence_position=unit.sequence_position,
            duration_minutes=unit.duration_minutes,
            difficulty_tier=unit.difficulty_tier,
        )
        for unit in payload
    )
    session.flush()
    return len(payload)


class DatabaseContentCatalog:
    """Catalog backed by the ``learning_units`` table."""

    def get_units(self, course_id: str) -> List[LearningUnit]:
        stmt = (
            select(LearningUnitModel)
            .where(LearningUnitModel.course_id == course_id)
            .order_by(LearningUnitModel.sequence_position, LearningUnitModel.unit_id)
        )
        try:
            with session_scope(commit=False) as session:
                rows = session.execute(stmt).scalars().all()
                units = [self._to_domain(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception("Failed to load units for course %s", course_id)
            raise StorageError(f"Unable to load units for course '{course_id}'.") from exc
        if not units:
            raise CourseNotFound(f"Course '{course_id}' is not in the catalog.", details={"course_id": course_id})
        return units

    def replace_course(self, course_id: str, units: Iterable[LearningUnit]) -> int:
        try:
            with session_scope() as session:
                return write_course_units(session, course_id, units)
        except SQLAlchemyError as exc:
            logger.exception("Failed to store units for course %s", course_id)
            raise StorageError(f"Unable to store units for course '{course_id}'.") from exc

    @staticmethod
    def _to_domain(row: LearningUnitModel) -> LearningUnit:
        return LearningUnit(
            unit_id=row.unit_id,
            course_id=row.course_id,
            sequence_position=row.sequence_position,
            duration_minutes=row.duration_minutes,
            difficulty_tier=row.difficulty_tier,
            title=row.title,
        )


__all__ = ["ContentCatalog", "DatabaseContentCatalog", "InMemoryContentCatalog", "write_course_units"]
