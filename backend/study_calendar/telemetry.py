"""Structured telemetry for calendar generation, edits, and adaptation runs.

Events fan out to in-process listeners and are logged as one ``TELEMETRY``
JSON line each. Payload values are flattened to JSON-friendly types before
listeners see them: datetimes become ISO strings, durations become seconds.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from threading import RLock
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Sequence

logger = logging.getLogger("study_calendar.telemetry")

Listener = Callable[["TelemetryEvent"], None]


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_listeners: List[Listener] = []
_lock = RLock()


def register_listener(listener: Listener) -> None:
    with _lock:
        _listeners.append(listener)


def unregister_listener(listener: Listener) -> None:
    with _lock:
        if listener in _listeners:
            _listeners.remove(listener)


@contextmanager
def capture_events(names: Optional[Sequence[str]] = None) -> Generator[List[TelemetryEvent], None, None]:
    """Collect events emitted inside the block, optionally only ``names``."""
    captured: List[TelemetryEvent] = []
    wanted = set(names) if names else None

    def _collect(event: TelemetryEvent) -> None:
        if wanted is None or event.name in wanted:
            captured.append(event)

    register_listener(_collect)
    try:
        yield captured
    finally:
        unregister_listener(_collect)


def emit_event(name: str, **fields: Any) -> None:
    """Emit ``name`` with ``fields`` to every listener, then log it."""
    event = TelemetryEvent(name=name, payload=_sanitize(fields))

    with _lock:
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    if logger.isEnabledFor(logging.INFO):
        structured = {"event": name, "emitted_at": event.emitted_at.isoformat(), **event.payload}
        logger.info("TELEMETRY %s", json.dumps(structured, default=str, sort_keys=True))


def _sanitize(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: _plain(value) for key, value in fields.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(item) for item in value]
    return value


__all__ = [
    "TelemetryEvent",
    "capture_events",
    "emit_event",
    "register_listener",
    "unregister_listener",
]
