"""
Bounded in-memory activity log shown on the dashboard.

Every entry is also mirrored to the panel's own diagnostic log so the console
shows the same stream, colorized by severity.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List

log = logging.getLogger("bot_panel.log_sink")

DEFAULT_CAPACITY = 500
DEFAULT_MESSAGE_LIMIT = 1000

SEVERITIES = ("info", "success", "warning", "error")

_COLORS = {
    "info": "\x1b[36m",
    "success": "\x1b[32m",
    "warning": "\x1b[33m",
    "error": "\x1b[31m",
}
_RESET = "\x1b[0m"

_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    message: str
    severity: str
    actor: str

    def to_dict(self) -> Dict[str, Any]:
        # "type"/"username" are the keys the dashboard reads
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "type": self.severity,
            "username": self.actor,
        }


class LogSink:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, message_limit: int = DEFAULT_MESSAGE_LIMIT):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.message_limit = message_limit
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, message: Any, severity: str = "info", actor: str = "system") -> LogEntry:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown log severity: {severity!r}")
        text = str(message)[: self.message_limit]
        entry = LogEntry(
            timestamp=time.strftime("%H:%M:%S", time.localtime()),
            message=text,
            severity=severity,
            actor=actor or "system",
        )
        with self._lock:
            # deque(maxlen) drops from the head once full
            self._entries.append(entry)

        log.log(
            _LEVELS[severity],
            "%s[%s] [%s]%s %s",
            _COLORS[severity], severity.upper(), entry.actor, _RESET, text,
        )
        return entry

    def recent(self, n: int) -> List[LogEntry]:
        """Return the last ``n`` entries, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            items = list(self._entries)
        return items[-n:]

    def clear(self, actor: str = "system") -> None:
        with self._lock:
            self._entries.clear()
        self.append("Logs cleared", "warning", actor)
