"""
Notification Worker

Decouples approval creation from human notification. The worker subscribes
to approval_created on the event bus, queues each record, and delivers it to
the Notifier on a background thread (or on demand via process_pending()).
A failing or slow notifier never affects the ledger: failures are logged
and counted, and a full queue drops the notification.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from src.core import event_bus as events
from src.core.event_bus import Event, EventBus

from .config import NotificationConfig
from .models import ApprovalRecord

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Delivers 'approval needed' notices to humans (email, chat, UI...)."""

    def notify_approval_created(self, record: ApprovalRecord) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the notice to the log."""

    def notify_approval_created(self, record: ApprovalRecord) -> None:
        logger.info(
            "Approval needed: %s (%s, tier=%s) for org %s",
            record.id, record.action, record.risk_tier.value,
            record.approver_organization_id,
        )


@dataclass
class DrainResult:
    """Summary of a drain operation."""
    delivered: int
    failed: int


class NotificationWorker:
    """Queue-backed consumer of approval_created events."""

    def __init__(
        self,
        notifier: Notifier,
        bus: Optional[EventBus] = None,
        config: Optional[NotificationConfig] = None,
    ):
        self._notifier = notifier
        self._config = config or NotificationConfig()
        self._queue: queue.Queue = queue.Queue(maxsize=self._config.queue_max_depth)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.delivered = 0
        self.failed = 0
        self.dropped = 0
        if bus is not None:
            bus.subscribe(events.APPROVAL_CREATED, self.on_event)

    def on_event(self, event: Event) -> None:
        record = event.payload.get("record")
        if record is None:
            logger.warning("approval_created event without a record: %s", event.payload)
            return
        self.submit(record)

    def submit(self, record: ApprovalRecord) -> bool:
        """Queue a record for notification. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(record)
            return True
        except queue.Full:
            self.dropped += 1
            logger.error("Notification queue full (%d), dropped approval %s",
                         self._config.queue_max_depth, record.id)
            return False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def process_pending(self) -> DrainResult:
        """Deliver everything currently queued on the calling thread."""
        delivered = failed = 0
        while True:
            try:
                record = self._queue.get_nowait()
            except queue.Empty:
                break
            if self._deliver(record):
                delivered += 1
            else:
                failed += 1
        return DrainResult(delivered=delivered, failed=failed)

    # ── Background thread ────────────────────────────────────────

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="governance-notifier", daemon=True
        )
        self._thread.start()
        logger.info("Notification worker started")

    def stop(self, timeout: Optional[float] = None) -> DrainResult:
        """Stop the worker thread, then deliver whatever is left."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(
                timeout if timeout is not None else self._config.drain_timeout_seconds
            )
            self._thread = None
        result = self.process_pending()
        logger.info("Notification worker stopped (delivered=%d, failed=%d, dropped=%d)",
                    self.delivered, self.failed, self.dropped)
        return result

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                record = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            self._deliver(record)

    def _deliver(self, record: ApprovalRecord) -> bool:
        try:
            self._notifier.notify_approval_created(record)
            self.delivered += 1
            return True
        except Exception as exc:
            self.failed += 1
            logger.error("Notifier failed for approval %s: %s", record.id, exc)
            return False
