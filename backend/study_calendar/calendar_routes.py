"""REST endpoints exposing calendar generation, edits, stats, and adaptation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from .engine import CalendarEngine
from .errors import (
    AlreadyCompleted,
    CalendarError,
    ConcurrentModification,
    CourseNotFound,
    InsufficientHistory,
    InvalidConstraints,
    InvalidDuration,
    NotFound,
    OverlapViolation,
    StorageError,
)
from .models import (
    AdaptationSuggestion,
    CalendarEvent,
    CompletionResult,
    EventFilters,
    GenerationResult,
    RescheduleResult,
    SessionEndResult,
    StudySession,
    StudyStats,
)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])
logger = logging.getLogger(__name__)

MAX_UPCOMING_LIMIT = 50

_STATUS_BY_ERROR = {
    NotFound: status.HTTP_404_NOT_FOUND,
    CourseNotFound: status.HTTP_404_NOT_FOUND,
    OverlapViolation: status.HTTP_409_CONFLICT,
    AlreadyCompleted: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    InvalidConstraints: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDuration: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InsufficientHistory: status.HTTP_422_UNPROCESSABLE_ENTITY,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_engine: Optional[CalendarEngine] = None


def get_calendar_engine() -> CalendarEngine:
    global _engine
    if _engine is None:
        _engine = CalendarEngine()
    return _engine


def _raise_http(exc: CalendarError) -> NoReturn:
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("Calendar request failed: %s", exc)
    raise HTTPException(status_code=status_code, detail=exc.to_payload()) from exc


class CompleteEventRequest(BaseModel):
    actual_minutes: Any = None
    completed_at: Optional[datetime] = None
    strict: bool = False


class RescheduleRequest(BaseModel):
    new_date: datetime
    cascade: bool = False
    expected_version: Optional[int] = Field(default=None, ge=0)


class StartSessionRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    event_id: Optional[str] = None
    started_at: Optional[datetime] = None
    notes: Optional[str] = None


class EndSessionRequest(BaseModel):
    completed: bool = True
    ended_at: Optional[datetime] = None
    notes: Optional[str] = None


class AnalyzeRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    apply: bool = False
    strict: bool = False


class AnalyzeResponse(BaseModel):
    suggestion: AdaptationSuggestion
    applied: bool = False
    updated_events: List[CalendarEvent] = Field(default_factory=list)


@router.post("/generate", response_model=GenerationResult, status_code=status.HTTP_201_CREATED)
def generate_calendar(
    payload: Dict[str, Any] = Body(...),
    expected_version: Optional[int] = Query(default=None, ge=0),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> GenerationResult:
    try:
        return engine.generate(payload, expected_version=expected_version)
    except CalendarError as exc:
        _raise_http(exc)


@router.get("/events", response_model=List[CalendarEvent])
def list_events(
    student_id: str = Query(..., min_length=1),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    completed: Optional[bool] = Query(default=None),
    unit_id: Optional[str] = Query(default=None),
    course_id: Optional[str] = Query(default=None),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> List[CalendarEvent]:
    filters = EventFilters(
        student_id=student_id,
        start=start,
        end=end,
        completed=completed,
        unit_id=unit_id,
        course_id=course_id,
    )
    try:
        return engine.query(filters)
    except CalendarError as exc:
        _raise_http(exc)


@router.get("/events/upcoming", response_model=List[CalendarEvent])
def upcoming_events(
    student_id: str = Query(..., min_length=1),
    limit: int = Query(default=5, ge=1, le=MAX_UPCOMING_LIMIT),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> List[CalendarEvent]:
    try:
        return engine.upcoming(student_id, limit)
    except CalendarError as exc:
        _raise_http(exc)


@router.post("/events/{event_id}/complete", response_model=CompletionResult)
def complete_event(
    event_id: str,
    request: CompleteEventRequest,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> CompletionResult:
    try:
        return engine.mark_complete(
            event_id,
            request.actual_minutes,
            completed_at=request.completed_at,
            strict=request.strict,
        )
    except CalendarError as exc:
        _raise_http(exc)


@router.post("/events/{event_id}/reschedule", response_model=RescheduleResult)
def reschedule_event(
    event_id: str,
    request: RescheduleRequest,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> RescheduleResult:
    try:
        return engine.reschedule(
            event_id,
            request.new_date,
            request.cascade,
            expected_version=request.expected_version,
        )
    except CalendarError as exc:
        _raise_http(exc)


@router.patch("/events/{event_id}", response_model=CalendarEvent)
def update_event(
    event_id: str,
    patch: Dict[str, Any] = Body(...),
    expected_version: Optional[int] = Query(default=None, ge=0),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> CalendarEvent:
    try:
        return engine.update(event_id, patch, expected_version=expected_version)
    except CalendarError as exc:
        _raise_http(exc)


@router.delete("/events/{event_id}", response_model=CalendarEvent)
def delete_event(
    event_id: str,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> CalendarEvent:
    try:
        return engine.delete(event_id)
    except CalendarError as exc:
        _raise_http(exc)


@router.get("/stats", response_model=StudyStats)
def study_stats(
    student_id: str = Query(..., min_length=1),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> StudyStats:
    try:
        return engine.stats(student_id)
    except CalendarError as exc:
        _raise_http(exc)


@router.post("/sessions", response_model=StudySession, status_code=status.HTTP_201_CREATED)
def start_session(
    request: StartSessionRequest,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> StudySession:
    try:
        return engine.start_session(
            request.student_id,
            request.event_id,
            started_at=request.started_at,
            notes=request.notes,
        )
    except CalendarError as exc:
        _raise_http(exc)


@router.post("/sessions/{session_id}/end", response_model=SessionEndResult)
def end_session(
    session_id: str,
    request: EndSessionRequest,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> SessionEndResult:
    try:
        return engine.end_session(
            session_id,
            completed=request.completed,
            ended_at=request.ended_at,
            notes=request.notes,
        )
    except CalendarError as exc:
        _raise_http(exc)


@router.get("/sessions", response_model=List[StudySession])
def list_sessions(
    student_id: str = Query(..., min_length=1),
    since: Optional[datetime] = Query(default=None),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> List[StudySession]:
    try:
        return engine.sessions(student_id, since=since)
    except CalendarError as exc:
        _raise_http(exc)


@router.post("/analyze", response_model=AnalyzeResponse)
def analyze_calendar(
    request: AnalyzeRequest,
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> AnalyzeResponse:
    try:
        suggestion = engine.analyze(request.student_id, strict=request.strict)
        if not request.apply or suggestion.is_noop:
            return AnalyzeResponse(suggestion=suggestion)
        updated = engine.apply_adaptation(suggestion)
    except CalendarError as exc:
        _raise_http(exc)
    return AnalyzeResponse(suggestion=suggestion, applied=True, updated_events=updated)


@router.delete("/courses/{course_id}")
def abandon_course(
    course_id: str,
    student_id: str = Query(..., min_length=1),
    engine: CalendarEngine = Depends(get_calendar_engine),
) -> Dict[str, Any]:
    try:
        removed = engine.abandon_course(student_id, course_id)
    except CalendarError as exc:
        _raise_http(exc)
    return {"student_id": student_id, "course_id": course_id, "removed": removed}


__all__ = ["get_calendar_engine", "router"]
