"""Registry notifications.

Every successful mutation produces one structured notification, rendered as a
log line ``EVENT_JSON:<json>``:

    {"standard": "FractalRegistry", "version": "0",
     "event": "grant_inserted" | "grant_deleted",
     "data": {"owner": ..., "grantee": ..., "data_id": ..., "locked_until": ...}}

Notifications are a side channel. The registry hands them to sinks only after
the call's storage unit has committed, so a failed call never announces
anything.
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

EVENT_STANDARD = "FractalRegistry"
EVENT_VERSION = "0"
EVENT_JSON_PREFIX = "EVENT_JSON"
EVENT_JSON_SEPARATOR = ":"

GRANT_INSERTED = "grant_inserted"
GRANT_DELETED = "grant_deleted"

events_logger = logging.getLogger("fractal_registry.events")


@dataclass(frozen=True)
class GrantEvent:
    event: str
    owner: str
    grantee: str
    data_id: str
    locked_until: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "standard": EVENT_STANDARD,
            "version": EVENT_VERSION,
            "event": self.event,
            "data": {
                "owner": self.owner,
                "grantee": self.grantee,
                "data_id": self.data_id,
                "locked_until": self.locked_until,
            },
        }

    def to_log_line(self) -> str:
        body = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        return f"{EVENT_JSON_PREFIX}{EVENT_JSON_SEPARATOR}{body}"


def parse_event_line(line: str) -> Dict[str, Any]:
    """Inverse of GrantEvent.to_log_line. Raises ValueError on foreign lines."""
    prefix, sep, body = line.partition(EVENT_JSON_SEPARATOR)
    if prefix != EVENT_JSON_PREFIX or not sep:
        raise ValueError(f"expected {EVENT_JSON_PREFIX!r} prefix in {line!r}")
    value = json.loads(body)
    if not isinstance(value, dict):
        raise ValueError("event body must be a JSON object")
    return value


class EventSink(abc.ABC):
    """Receives committed notifications."""

    @abc.abstractmethod
    def emit(self, event: GrantEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Writes each notification as an INFO record on the events logger."""

    def __init__(self, logger: logging.Logger = events_logger):
        self.logger = logger

    def emit(self, event: GrantEvent) -> None:
        self.logger.info("%s", event.to_log_line())


class FileEventSink(EventSink):
    """Append notification lines to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: GrantEvent) -> None:
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(event.to_log_line())
            f.write("\n")


class MemoryEventSink(EventSink):
    def __init__(self) -> None:
        self.events: List[GrantEvent] = []

    def emit(self, event: GrantEvent) -> None:
        self.events.append(event)

    def lines(self) -> List[str]:
        return [e.to_log_line() for e in self.events]


class MultiEventSink(EventSink):
    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: GrantEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)
