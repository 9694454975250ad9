"""Recording of events emitted about objects."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, List

from snapkeeper.store import meta_namespace_key

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """One event about an object, identified by the object's key."""

    event_type: str
    reason: str
    message: str
    involved_object: str = ""

    def __str__(self) -> str:
        return f"{self.event_type} {self.reason} {self.message}"


class EventRecorder:
    """Collects events in the order they were emitted."""

    def __init__(self, component: str = "snapshot-controller") -> None:
        self.component = component
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        involved = meta_namespace_key(obj) if obj is not None else ""
        recorded = Event(event_type, reason, message, involved)
        logger.info("%s: event on %s: %s", self.component, involved, recorded)
        with self._lock:
            self._events.append(recorded)

    def drain(self) -> List[Event]:
        """Return every event recorded so far and forget them."""
        with self._lock:
            events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)