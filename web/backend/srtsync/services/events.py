"""
Event Bus and Activity Log

Named-event fan-out to external consumers (WebSocket layer, tests) and
the bounded operator-facing activity log.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

from ..models import LogEntry, LogLevel

logger = logging.getLogger(__name__)

# Event kinds
CHANNELS = "channels"
LOG = "log"
STATS = "stats"
SERVER_CONFIG = "server_config"
TIMECODE = "timecode"

EVENT_KINDS = (CHANNELS, LOG, STATS, SERVER_CONFIG, TIMECODE)

MAX_LOG_ENTRIES = 500

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

Subscriber = Callable[[str, Any], None]


class EventBus:
    """Explicit subscriber list per event kind."""

    def __init__(self):
        self._subscribers: dict[str, list[Subscriber]] = {kind: [] for kind in EVENT_KINDS}

    def subscribe(self, kind: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        if kind not in self._subscribers:
            raise ValueError(f"Unknown event kind: {kind}. Valid: {list(EVENT_KINDS)}")
        self._subscribers[kind].append(callback)

        def unsubscribe():
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    def subscribe_all(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every event kind."""
        removers = [self.subscribe(kind, callback) for kind in EVENT_KINDS]

        def unsubscribe():
            for remove in removers:
                remove()

        return unsubscribe

    def emit(self, kind: str, payload: Any):
        """Deliver payload to every subscriber of kind."""
        for callback in list(self._subscribers.get(kind, [])):
            try:
                callback(kind, payload)
            except Exception as e:
                logger.error(f"Subscriber for '{kind}' failed: {e}")


class ActivityLog:
    """
    Append-only ring buffer of operator-facing log entries.

    Newest entries come first. Each append is mirrored to the Python
    logger and published as a `log` event.
    """

    def __init__(self, bus: EventBus, capacity: int = MAX_LOG_ENTRIES):
        self._bus = bus
        self._entries: deque[LogEntry] = deque(maxlen=capacity)

    def add(self, level: LogLevel, message: str) -> LogEntry:
        entry = LogEntry(
            id=str(uuid.uuid4()),
            level=level,
            message=message,
            timestamp=datetime.now(timezone.utc),
        )
        self._entries.appendleft(entry)
        logger.log(_LOG_LEVELS[level], message)
        self._bus.emit(LOG, entry.model_dump(mode="json"))
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(LogLevel.INFO, message)

    def success(self, message: str) -> LogEntry:
        return self.add(LogLevel.SUCCESS, message)

    def warning(self, message: str) -> LogEntry:
        return self.add(LogLevel.WARNING, message)

    def error(self, message: str) -> LogEntry:
        return self.add(LogLevel.ERROR, message)

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()
        self._bus.emit(LOG, {"cleared": True})

    def __len__(self) -> int:
        return len(self._entries)
