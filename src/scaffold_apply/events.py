"""Domain events for scaffold apply, and the local bus they are published on.

Delivery semantics
------------------
- Synchronous: ``publish`` calls every subscriber before returning.
- In order: subscribers see events in publication order.
- At most once, best effort: a subscriber that raises is logged and skipped
  for that event; nothing is retried, buffered, or persisted.

Durability comes only from the manifest and checkpoint stores.

Every event is::

    {
        "event_id": "evt_1739648400123_9f2c...",
        "scaffold_id": "...",
        "run_id": "...",            # optional
        "timestamp": "2026-...Z",
        "type": "scaffold_applied",
        "payload": { ... },
    }
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCAFFOLD_APPLY_STARTED = "scaffold_apply_started"
    SCAFFOLD_CONFLICT_DETECTED = "scaffold_conflict_detected"
    DECISION_POINT_NEEDED = "decision_point_needed"
    SCAFFOLD_APPLIED = "scaffold_applied"
    SCAFFOLD_APPLY_FAILED = "scaffold_apply_failed"
    SCAFFOLD_COMPLETED = "scaffold_completed"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESTORED = "checkpoint_restored"


def generate_event_id() -> str:
    return f"evt_{time.time_ns() // 1_000_000}_{secrets.token_hex(8)}"


@dataclass
class Event:
    type: EventType
    scaffold_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    event_id: str = field(default_factory=generate_event_id)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "event_id": self.event_id,
            "scaffold_id": self.scaffold_id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "payload": self.payload,
        }
        if self.run_id is not None:
            data["run_id"] = self.run_id
        return data


Subscriber = Callable[[Event], None]


class EventBus:
    """In-process callback registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> Event:
        """Deliver event to the current subscribers, in registration order."""
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Subscriber %r failed on %s; event dropped for it",
                               callback, event.type.value, exc_info=True)

        logger.debug("event %s scaffold=%s", event.type.value, event.scaffold_id)
        return event


class EventCollector:
    """Subscriber that keeps every event it receives. Handy for callers and tests."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type.value for e in self.events]

    def of_type(self, event_type: EventType) -> List[Event]:
        return [e for e in self.events if e.type == event_type]
