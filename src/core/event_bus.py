"""
Governance Event Bus — in-memory pub/sub for governance lifecycle events.

The approval ledger, layer router and self-modification governor publish
events (approval_created, approval_resolved, approval_execution_failed,
soul_version_created, ...). Subscribers such as the notification worker
consume them. A failing subscriber is logged and never affects the
publisher or the other subscribers.

Thread-safe: publishers may run on any thread.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


# Event types
APPROVAL_CREATED = "approval_created"
APPROVAL_RESOLVED = "approval_resolved"
APPROVAL_EXPIRED = "approval_expired"
APPROVAL_DISCARDED = "approval_discarded"
APPROVAL_EXECUTED = "approval_executed"
APPROVAL_EXECUTION_FAILED = "approval_execution_failed"
PROPOSAL_GATED = "proposal_gated"
SOUL_VERSION_CREATED = "soul_version_created"
LAYER_MESSAGE_CREATED = "layer_message_created"


@dataclass
class Event:
    """A single event emitted by a governance component."""
    type: str
    payload: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[Event], None]


class EventBus:
    """Simple in-memory synchronous pub/sub event bus."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._global_subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Subscribe to a specific event type."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        """Subscribe to all events."""
        with self._lock:
            self._global_subscribers.append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        with self._lock:
            callbacks = list(self._global_subscribers)
            callbacks.extend(self._subscribers.get(event.type, []))

        for cb in callbacks:
            try:
                cb(event)
            except Exception as exc:
                logger.error("Event subscriber error for %s: %s", event.type, exc)

    def emit(self, event_type: str, **payload) -> Event:
        """Build and publish an event in one call."""
        event = Event(type=event_type, payload=payload)
        self.publish(event)
        return event
