"""In-memory telemetry buffer fed by the Loguru logger."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List

DEFAULT_CAPACITY = 500


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: datetime
    level: str
    component: str
    message: str
    exception: str | None = None
    context: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class TelemetryBuffer:
    """Ring buffer of recent log entries.

    Registered as a Loguru sink, so writes happen on whatever thread emitted
    the record; a lock keeps reads consistent with concurrent appends.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def sink(self, message: Any) -> None:
        record = message.record
        exception = record.get("exception")
        entry = LogEntry(
            timestamp=record["time"],
            level=record["level"].name,
            component=record["name"] or "unknown",
            message=record["message"],
            exception=repr(exception.value) if exception and exception.value else None,
            context=dict(record["extra"]) or None,
        )
        with self._lock:
            self._entries.append(entry)

    def recent(self, limit: int | None = None) -> List[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


telemetry_buffer = TelemetryBuffer()
