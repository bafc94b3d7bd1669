"""
Tests for the event bus and the bounded activity log.
"""
import pytest

from srtsync.models import LogLevel
from srtsync.services.events import CHANNELS, LOG, STATS, ActivityLog, EventBus


class TestEventBus:
    def test_subscribe_and_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(STATS, lambda kind, payload: received.append(payload))

        bus.emit(STATS, {"total_channels": 1})
        bus.emit(CHANNELS, [])
        unsubscribe()
        bus.emit(STATS, {"total_channels": 2})

        assert received == [{"total_channels": 1}]

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            EventBus().subscribe("bogus", lambda kind, payload: None)

    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(kind, payload):
            raise RuntimeError("boom")

        bus.subscribe(LOG, broken)
        bus.subscribe(LOG, lambda kind, payload: received.append(kind))
        bus.emit(LOG, {})

        assert received == [LOG]

    def test_subscribe_all(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe_all(lambda kind, payload: received.append(kind))

        bus.emit(CHANNELS, [])
        bus.emit(STATS, {})
        unsubscribe()
        bus.emit(LOG, {})

        assert received == [CHANNELS, STATS]


class TestActivityLog:
    def test_newest_first(self):
        log = ActivityLog(EventBus())
        log.info("first")
        log.warning("second")

        entries = log.entries()
        assert [e.message for e in entries] == ["second", "first"]
        assert entries[0].level == LogLevel.WARNING

    def test_capacity_evicts_oldest(self):
        log = ActivityLog(EventBus(), capacity=3)
        for i in range(5):
            log.info(f"entry {i}")

        assert len(log) == 3
        assert [e.message for e in log.entries()] == ["entry 4", "entry 3", "entry 2"]

    def test_entries_are_immutable(self):
        entry = ActivityLog(EventBus()).success("done")
        with pytest.raises(Exception):
            entry.message = "changed"

    def test_append_publishes_event(self):
        bus = EventBus()
        received = []
        bus.subscribe(LOG, lambda kind, payload: received.append(payload))

        ActivityLog(bus).error("engine failed")

        assert received[0]["level"] == "error"
        assert received[0]["message"] == "engine failed"

    def test_clear(self):
        bus = EventBus()
        received = []
        bus.subscribe(LOG, lambda kind, payload: received.append(payload))
        log = ActivityLog(bus)
        log.info("x")

        log.clear()

        assert len(log) == 0
        assert received[-1] == {"cleared": True}
