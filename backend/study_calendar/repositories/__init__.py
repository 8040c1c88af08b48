from .calendar_events import CalendarEventRepository, calendar_events
from .study_sessions import StudySessionRepository, study_sessions

__all__ = ["CalendarEventRepository", "StudySessionRepository", "calendar_events", "study_sessions"]
