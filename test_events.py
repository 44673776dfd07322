"""Tests for the pipeline event bus."""

import dataclasses

import pytest

from events import EventBus, EventType


class TestEventBus:

    def test_delivers_in_emit_order(self):
        bus = EventBus()
        seen = []
        bus.on(EventType.RESPONSE_CHUNK, lambda e: seen.append(e["seq"]))

        for seq in range(5):
            bus.emit(EventType.RESPONSE_CHUNK, text="x", seq=seq)

        assert seen == [0, 1, 2, 3, 4]

    def test_wildcard_sees_every_event_after_specific_subscribers(self):
        bus = EventBus()
        order = []
        bus.on("*", lambda e: order.append(("all", e.type)))
        bus.on("error", lambda e: order.append(("error", e.type)))

        bus.emit(EventType.ERROR, kind="internal", detail={})
        bus.emit(EventType.WAKE_WORD, keyword="computer", confidence=0.9)

        assert order == [("error", EventType.ERROR), ("all", EventType.ERROR),
                         ("all", EventType.WAKE_WORD)]

    def test_failing_subscriber_does_not_break_others(self, caplog):
        bus = EventBus()
        seen = []

        def broken(_event):
            raise RuntimeError("boom")

        bus.on(EventType.STATE_CHANGED, broken)
        bus.on(EventType.STATE_CHANGED, seen.append)
        bus.emit(EventType.STATE_CHANGED, **{"from": "idle", "to": "wake_listening"})

        assert len(seen) == 1
        assert "Event callback failed" in caplog.text

    def test_off_unsubscribes(self):
        bus = EventBus()
        seen = []
        bus.on(EventType.ERROR, seen.append)
        bus.off(EventType.ERROR, seen.append)

        bus.emit(EventType.ERROR, kind="internal", detail={})

        assert seen == []

    def test_events_are_immutable_and_sequenced(self):
        bus = EventBus()
        first = bus.emit(EventType.TRANSCRIPT_PARTIAL, text="what")
        second = bus.emit(EventType.TRANSCRIPT_FINAL, text="what time is it")

        assert second.seq > first.seq
        assert second["text"] == "what time is it"
        with pytest.raises(dataclasses.FrozenInstanceError):
            first.seq = 10

    def test_rejects_unknown_event_type(self):
        with pytest.raises(ValueError):
            EventBus().emit("no_such_event")
