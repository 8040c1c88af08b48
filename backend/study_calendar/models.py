"""Domain models shared by the generator, store, and adaptive scheduler."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidConstraints

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
TIME_SLOT_HOURS: Dict[str, int] = {
    "morning": 9,
    "afternoon": 14,
    "evening": 19,
    "late-night": 22,
}
SESSION_LENGTH_MINUTES: Dict[str, int] = {
    "short": 25,
    "medium": 50,
    "long": 90,
}

TimeSlot = Literal["morning", "afternoon", "evening", "late-night"]
SessionLength = Literal["short", "medium", "long"]
PaceClassification = Literal["on-pace", "falling-behind", "ahead-of-pace", "struggling"]
OnTrackStatus = Literal["ahead", "on-track", "behind"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _reject_non_numeric(value: Any, *, integral: bool) -> Any:
    if isinstance(value, bool):
        raise ValueError("booleans are not accepted here")
    if integral and not isinstance(value, int):
        raise ValueError("must be an integer")
    if not isinstance(value, (int, float)):
        raise ValueError("must be a number")
    return value


class LearningUnit(BaseModel):
    """Catalog metadata for one unit of course content."""

    unit_id: str
    course_id: str
    sequence_position: int = Field(ge=0)
    duration_minutes: int = Field(gt=0)
    difficulty_tier: int = Field(default=3, ge=1, le=5)
    title: Optional[str] = None


class OnboardingConstraints(BaseModel):
    """Validated scheduling constraints captured during onboarding."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    student_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    available_hours_per_week: float = Field(gt=0, le=168)
    target_completion_weeks: int = Field(ge=1)
    preferred_days: List[str] = Field(default_factory=list)
    preferred_time_slot: TimeSlot = "evening"
    daily_session_cap: Optional[int] = Field(default=None, ge=1, le=12)
    session_length: Optional[SessionLength] = None
    start_date: Optional[date] = None
    timezone: str = "UTC"

    @field_validator("student_id", "course_id", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> Any:
        if not isinstance(value, str):
            raise ValueError("must be a string")
        return value.strip()

    @field_validator("available_hours_per_week", mode="before")
    @classmethod
    def _require_number(cls, value: Any) -> Any:
        return _reject_non_numeric(value, integral=False)

    @field_validator("target_completion_weeks", "daily_session_cap", mode="before")
    @classmethod
    def _require_integer(cls, value: Any) -> Any:
        if value is None:
            return value
        return _reject_non_numeric(value, integral=True)

    @field_validator("preferred_days", mode="before")
    @classmethod
    def _normalise_days(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            raise ValueError("must be a list of weekday names")
        days: List[str] = []
        for entry in value:
            if not isinstance(entry, str):
                raise ValueError("weekday names must be strings")
            day = entry.strip().lower()
            if day not in WEEKDAYS:
                raise ValueError(f"unknown weekday '{entry}'")
            if day not in days:
                days.append(day)
        return days

    @field_validator("start_date", mode="before")
    @classmethod
    def _parse_start_date(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, datetime):
            raise ValueError("must be a calendar date, not a timestamp")
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            return date.fromisoformat(value.strip())
        raise ValueError("must be an ISO date string")

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: Any) -> Any:
        if value is None:
            return "UTC"
        if not isinstance(value, str) or not value.strip():
            raise ValueError("must be an IANA timezone name")
        try:
            return ZoneInfo(value.strip()).key
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc

    @property
    def weekly_cap_minutes(self) -> int:
        return int(round(self.available_hours_per_week * 60))

    @property
    def session_cap_minutes(self) -> Optional[int]:
        if self.session_length is None:
            return None
        return SESSION_LENGTH_MINUTES[self.session_length]

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def parse_constraints(payload: Mapping[str, Any] | OnboardingConstraints) -> OnboardingConstraints:
    """Validate a loosely-typed payload into :class:`OnboardingConstraints`."""
    if isinstance(payload, OnboardingConstraints):
        return payload
    if not isinstance(payload, Mapping):
        raise InvalidConstraints("Constraints payload must be an object.")
    try:
        return OnboardingConstraints.model_validate(dict(payload))
    except ValidationError as exc:
        problems = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        summary = "; ".join(f"{problem['field']}: {problem['message']}" for problem in problems)
        raise InvalidConstraints(
            f"Invalid onboarding constraints: {summary}",
            details={"errors": problems},
        ) from exc


class CalendarEvent(BaseModel):
    """One scheduled study session bound to a learning unit."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    student_id: str
    course_id: str
    unit_id: str
    sequence_position: int = Field(default=0, ge=0)
    scheduled_at: datetime
    planned_minutes: int = Field(ge=1)
    estimated_difficulty: int = Field(default=3, ge=1, le=5)
    completed: bool = False
    actual_minutes: Optional[int] = Field(default=None, ge=1)
    completed_at: Optional[datetime] = None
    rescheduled_from: Optional[datetime] = None
    reschedule_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @field_validator("scheduled_at", "completed_at", "rescheduled_from", "created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _completion_consistency(self) -> "CalendarEvent":
        if self.completed and self.actual_minutes is None:
            raise ValueError("completed events must record actual_minutes")
        if not self.completed and self.actual_minutes is not None:
            raise ValueError("actual_minutes is only recorded on completed events")
        return self

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.planned_minutes)


class EventPatch(BaseModel):
    """Direct field edits accepted by ``update_event``."""

    model_config = ConfigDict(extra="forbid")

    scheduled_at: Optional[datetime] = None
    planned_minutes: Optional[int] = Field(default=None, ge=1)
    estimated_difficulty: Optional[int] = Field(default=None, ge=1, le=5)

    @field_validator("scheduled_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class EventFilters(BaseModel):
    student_id: str = Field(min_length=1)
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    completed: Optional[bool] = None
    unit_id: Optional[str] = None
    course_id: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class GenerationWarning(BaseModel):
    """Non-fatal condition raised while laying out a calendar."""

    code: Literal["span_extended", "unit_exceeds_weekly_cap", "unit_exceeds_session_length"]
    message: str
    unit_id: Optional[str] = None
    suggested_weeks: Optional[int] = None


class GenerationResult(BaseModel):
    student_id: str
    course_id: str
    events: List[CalendarEvent] = Field(default_factory=list)
    total_events: int = 0
    total_minutes: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sessions_per_week: int = Field(default=1, ge=1)
    weekly_cap_minutes: int = Field(default=0, ge=0)
    planned_span_weeks: int = Field(default=1, ge=1)
    target_completion_at: datetime
    warnings: List[GenerationWarning] = Field(default_factory=list)

    @property
    def span_extended(self) -> bool:
        return any(warning.code == "span_extended" for warning in self.warnings)


class SchedulePreferences(BaseModel):
    """Constraints a course calendar was generated with."""

    student_id: str
    course_id: str
    constraints: OnboardingConstraints
    target_completion_at: datetime
    generated_at: datetime = Field(default_factory=_now)

    @field_validator("target_completion_at", "generated_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class CompletionResult(BaseModel):
    event: CalendarEvent
    already_completed: bool = False


class RescheduleResult(BaseModel):
    target: CalendarEvent
    moved: List[CalendarEvent] = Field(default_factory=list)
    delta: timedelta
    cascade: bool = False
    version: int = 0


class StudyStats(BaseModel):
    """Behavioral aggregates over a trailing window."""

    student_id: str
    window_start: datetime
    window_end: datetime
    scheduled_count: int = 0
    completed_count: int = 0
    completion_rate: float = 0.0
    total_planned_minutes: int = 0
    total_actual_minutes: int = 0
    average_duration_variance: float = 0.0
    average_session_minutes: float = 0.0
    current_streak_days: int = 0
    longest_streak_days: int = 0
    sessions_this_week: int = 0
    last_completed_at: Optional[datetime] = None
    projected_completion_at: Optional[datetime] = None
    on_track_status: OnTrackStatus = "on-track"
    tracked_session_count: int = 0
    tracked_session_minutes: int = 0


class StudySession(BaseModel):
    """A timed stretch of study, optionally tied to a calendar event."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    student_id: str = Field(min_length=1)
    event_id: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    completed: bool = False
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)

    @field_validator("started_at", "ended_at", "created_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class SessionEndResult(BaseModel):
    session: StudySession
    event: Optional[CalendarEvent] = None


class ScheduleMutation(BaseModel):
    """Single proposed change to a not-yet-completed event."""

    event_id: str
    action: Literal["reschedule", "change_duration"]
    previous_scheduled_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    previous_planned_minutes: Optional[int] = None
    planned_minutes: Optional[int] = Field(default=None, ge=1)
    note: Optional[str] = None

    @model_validator(mode="after")
    def _payload_matches_action(self) -> "ScheduleMutation":
        if self.action == "reschedule" and self.scheduled_at is None:
            raise ValueError("reschedule mutations need scheduled_at")
        if self.action == "change_duration" and self.planned_minutes is None:
            raise ValueError("change_duration mutations need planned_minutes")
        return self


class AdaptationSuggestion(BaseModel):
    student_id: str
    classification: PaceClassification
    urgency: Literal["low", "medium", "high"] = "low"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    rationale: str
    mutations: List[ScheduleMutation] = Field(default_factory=list)
    span_extended: bool = False
    insufficient_history: bool = False
    based_on_version: int = 0
    stats: Optional[StudyStats] = None
    generated_at: datetime = Field(default_factory=_now)

    @property
    def is_noop(self) -> bool:
        return not self.mutations


__all__ = [
    "AdaptationSuggestion",
    "CalendarEvent",
    "CompletionResult",
    "EventFilters",
    "EventPatch",
    "GenerationResult",
    "GenerationWarning",
    "LearningUnit",
    "OnboardingConstraints",
    "OnTrackStatus",
    "PaceClassification",
    "RescheduleResult",
    "SESSION_LENGTH_MINUTES",
    "ScheduleMutation",
    "SchedulePreferences",
    "SessionEndResult",
    "StudyStats",
    "StudySession",
    "TIME_SLOT_HOURS",
    "WEEKDAYS",
    "ensure_utc",
    "parse_constraints",
]
