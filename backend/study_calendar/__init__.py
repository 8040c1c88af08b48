"""Adaptive study calendar: generation, consistent edits, and pace-based adaptation."""

from .calendar_generator import CalendarGenerator
from .calendar_store import CalendarStore
from .adaptive_scheduler import AdaptiveScheduler
from .engine import CalendarEngine

__all__ = ["AdaptiveScheduler", "CalendarEngine", "CalendarGenerator", "CalendarStore"]
