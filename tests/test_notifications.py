"""Tests for the event bus and the notification worker."""

import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core.event_bus import APPROVAL_CREATED, Event, EventBus
from src.core.governance.config import NotificationConfig
from src.core.governance.models import ApprovalKind, ApprovalRecord
from src.core.governance.notifier import NotificationWorker


def _record(i=0):
    return ApprovalRecord(
        id=f"appr-{i}", kind=ApprovalKind.ACTION, action="create_contact",
        payload={}, agent_id="agent-1", organization_id="org-1",
    )


# ── EventBus ────────────────────────────────────────────────────

class TestEventBus:
    def test_typed_and_global_subscribers(self):
        bus = EventBus()
        typed, everything = [], []
        bus.subscribe("a", typed.append)
        bus.subscribe_all(everything.append)
        bus.emit("a", x=1)
        bus.emit("b")
        assert [e.payload for e in typed] == [{"x": 1}]
        assert [e.type for e in everything] == ["a", "b"]

    def test_failing_subscriber_is_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("subscriber bug")

        bus.subscribe("a", broken)
        bus.subscribe("a", seen.append)
        bus.publish(Event(type="a"))
        assert len(seen) == 1
        assert "subscriber bug" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe("a", seen.append)
        bus.unsubscribe("a", seen.append)
        bus.unsubscribe("a", seen.append)
        bus.emit("a")
        assert seen == []


# ── NotificationWorker ──────────────────────────────────────────

class TestNotificationWorker:
    def test_event_is_queued_not_delivered_inline(self, fake_notifier):
        bus = EventBus()
        worker = NotificationWorker(fake_notifier, bus)
        bus.emit(APPROVAL_CREATED, record=_record())
        assert fake_notifier.records == []
        assert worker.pending == 1
        assert worker.process_pending().delivered == 1
        assert fake_notifier.records[0].id == "appr-0"

    def test_event_without_record_is_ignored(self, fake_notifier):
        bus = EventBus()
        worker = NotificationWorker(fake_notifier, bus)
        bus.emit(APPROVAL_CREATED, approval_id="x")
        assert worker.pending == 0

    def test_full_queue_drops(self, fake_notifier, caplog):
        worker = NotificationWorker(fake_notifier, config=NotificationConfig(queue_max_depth=2))
        assert worker.submit(_record(0))
        assert worker.submit(_record(1))
        assert not worker.submit(_record(2))
        assert worker.dropped == 1
        assert "dropped approval appr-2" in caplog.text
        assert worker.process_pending().delivered == 2

    def test_failures_are_counted(self, fake_notifier):
        fake_notifier.fail = True
        worker = NotificationWorker(fake_notifier)
        worker.submit(_record())
        result = worker.process_pending()
        assert (result.delivered, result.failed) == (0, 1)
        assert worker.failed == 1

    def test_background_thread_delivers(self, fake_notifier):
        worker = NotificationWorker(fake_notifier)
        worker.start()
        try:
            worker.submit(_record())
            deadline = time.time() + 5
            while not fake_notifier.records and time.time() < deadline:
                time.sleep(0.01)
        finally:
            worker.stop(timeout=5)
        assert [r.id for r in fake_notifier.records] == ["appr-0"]
        assert worker.delivered == 1
