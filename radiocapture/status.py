"""
Bounded status log exposed for external inspection.

Log records from the radiocapture package are mirrored here by
StatusLogHandler, so the health endpoint and the bot can show the most
recent events without reading process output.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class StatusEvent:
    """One timestamped, human-readable event."""
    timestamp: datetime
    level: str
    message: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }


class StatusLog:
    """
    Append-only log that keeps only the most recent events.

    Attributes:
        max_entries: Capacity; older events are dropped first
    """

    def __init__(self, max_entries: int = 50):
        self.max_entries = max_entries
        self._events: deque[StatusEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def add(self, message: str, level: str = "INFO", timestamp: Optional[datetime] = None) -> StatusEvent:
        event = StatusEvent(
            timestamp=timestamp or datetime.now(timezone.utc),
            level=level,
            message=message,
        )
        with self._lock:
            self._events.append(event)
        return event

    def entries(self, limit: Optional[int] = None) -> list[StatusEvent]:
        """Return events oldest first, optionally only the last ``limit``."""
        with self._lock:
            events = list(self._events)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def __len__(self) -> int:
        return len(self._events)


class StatusLogHandler(logging.Handler):
    """Logging handler that copies formatted records into a StatusLog."""

    def __init__(self, status_log: StatusLog, level: int = logging.INFO):
        super().__init__(level)
        self.status_log = status_log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.status_log.add(
                record.getMessage(),
                level=record.levelname,
                timestamp=datetime.fromtimestamp(record.created, timezone.utc),
            )
        except Exception:
            self.handleError(record)


def attach_status_log(status_log: StatusLog, logger_name: str = "radiocapture") -> StatusLogHandler:
    """
    Mirror INFO and above from a logger tree into the status log.

    Args:
        status_log: Destination log
        logger_name: Logger whose records (and its children's) are mirrored

    Returns:
        The installed handler, so callers can remove it again
    """
    handler = StatusLogHandler(status_log)
    logging.getLogger(logger_name).addHandler(handler)
    return handler
