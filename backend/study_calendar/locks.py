"""Per-student lock registry serialising writes to one student's calendar."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from .errors import ConcurrentModification

logger = logging.getLogger(__name__)


class StudentLockRegistry:
    """Hands out one lock per student; different students never contend."""

    def __init__(self, *, default_timeout: Optional[float] = None) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._default_timeout = default_timeout

    def _lock_for(self, student_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(student_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[student_id] = lock
            return lock

    @contextmanager
    def hold(
        self,
        student_id: str,
        *,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> Generator[None, None, None]:
        """Hold the student's lock; bulk callers pass ``wait=False`` to fail fast."""
        lock = self._lock_for(student_id)
        if wait:
            limit = timeout if timeout is not None else self._default_timeout
            acquired = lock.acquire(timeout=limit if limit is not None else -1)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            logger.info("Calendar for %s is busy (wait=%s)", student_id, wait)
            raise ConcurrentModification(
                f"Calendar for student '{student_id}' is being modified; retry shortly.",
                details={"student_id": student_id},
            )
        try:
            yield
        finally:
            lock.release()

    def is_held(self, student_id: str) -> bool:
        return self._lock_for(student_id).locked()


__all__ = ["StudentLockRegistry"]
