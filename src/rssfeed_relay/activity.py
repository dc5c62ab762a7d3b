"""Bounded in-memory activity log for the administrative surface."""

import logging
import threading
from collections import deque
from datetime import datetime, timezone

MAX_ENTRIES = 1000


class ActivityLogHandler(logging.Handler):
    """Keeps the most recent log records as plain dicts."""

    def __init__(self, capacity: int = MAX_ENTRIES, level: int = logging.INFO):
        super().__init__(level)
        self._entries: deque[dict] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "level": record.levelname.lower(),
                "message": record.getMessage(),
                "source": record.name,
                "timestamp": datetime.fromtimestamp(
                    record.created, tz=timezone.utc
                ).isoformat(),
            }
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self, limit: int | None = None, level: str | None = None) -> list[dict]:
        """Newest first, optionally filtered by level name."""
        with self._entries_lock:
            items = list(self._entries)
        items.reverse()
        if level:
            items = [e for e in items if e["level"] == level.lower()]
        return items[:limit] if limit else items

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()


def install(logger_name: str = "rssfeed_relay", capacity: int = MAX_ENTRIES) -> ActivityLogHandler:
    """Attach an ActivityLogHandler to the package logger and return it."""
    handler = ActivityLogHandler(capacity)
    logging.getLogger(logger_name).addHandler(handler)
    return handler
