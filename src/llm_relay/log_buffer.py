"""In-memory log ring buffer with JSON export."""

from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque

MAX_ENTRIES = 1000


class RingBufferHandler(logging.Handler):
    """Keep the most recent log records as plain dicts.

    Attach it to the ``llm_relay`` logger to collect request diagnostics
    that can be exported after the fact::

        handler = RingBufferHandler()
        logging.getLogger("llm_relay").addHandler(handler)
        ...
        print(handler.export_json())
    """

    def __init__(self, capacity: int = MAX_ENTRIES, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._entries: Deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            }
            if record.exc_info:
                entry["exception"] = logging.Formatter().formatException(record.exc_info)
        except Exception:
            self.handleError(record)
            return
        with self.lock:
            self._entries.append(entry)

    def records(self, level: str | None = None) -> list[dict[str, Any]]:
        """Buffered entries, oldest first, optionally only one *level*."""
        with self.lock:
            entries = list(self._entries)
        if level is None:
            return entries
        wanted = level.lower()
        return [e for e in entries if e["level"] == wanted]

    def export_json(self) -> str:
        return json.dumps(self.records(), indent=2)

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()
