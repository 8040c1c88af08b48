"""Error taxonomy surfaced by the calendar engine.

Every error carries a stable ``code`` so request handlers can map it to a
distinct user-facing message without string matching.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CalendarError(Exception):
    code = "calendar_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidConstraints(CalendarError, ValueError):
    code = "invalid_constraints"


class InvalidDuration(CalendarError, ValueError):
    code = "invalid_duration"


class OverlapViolation(CalendarError, ValueError):
    code = "overlap_violation"


class NotFound(CalendarError, LookupError):
    code = "not_found"


class CourseNotFound(CalendarError, LookupError):
    code = "course_not_found"


class AlreadyCompleted(CalendarError):
    code = "already_completed"


class ConcurrentModification(CalendarError):
    code = "concurrent_modification"


class InsufficientHistory(CalendarError):
    code = "insufficient_history"


class StorageError(CalendarError):
    code = "storage_error"


__all__ = [
    "AlreadyCompleted",
    "CalendarError",
    "ConcurrentModification",
    "CourseNotFound",
    "InsufficientHistory",
    "InvalidConstraints",
    "InvalidDuration",
    "NotFound",
    "OverlapViolation",
    "StorageError",
]
