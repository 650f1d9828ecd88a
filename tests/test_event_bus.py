"""Tests for the in-process notification bus."""

from core.event_bus import EventBus


def test_publish_reaches_subscribers_and_buffer():
    bus = EventBus()
    seen = []
    bus.subscribe("risk.warning", seen.append)

    bus.publish("risk.warning", {"account_id": "a1"})
    bus.publish("order.executed", {"order_id": "o1"})

    assert [e["payload"] for e in seen] == [{"account_id": "a1"}]
    assert [e["type"] for e in bus.get_recent_events()] == ["risk.warning", "order.executed"]
    assert len(bus.get_recent_events("order.executed")) == 1


def test_failing_subscriber_is_isolated():
    bus = EventBus()
    seen = []

    def broken(_event):
        raise RuntimeError("downstream offline")

    bus.subscribe("risk.warning", broken)
    bus.subscribe("risk.warning", seen.append)

    bus.publish("risk.warning", {"account_id": "a1"})
    assert len(seen) == 1


def test_wildcard_and_unsubscribe():
    bus = EventBus()
    seen = []
    bus.subscribe("*", seen.append)

    bus.publish("a", {})
    assert bus.unsubscribe("*", seen.append) is True
    bus.publish("b", {})

    assert [e["type"] for e in seen] == ["a"]


def test_non_dict_payload_is_wrapped():
    bus = EventBus(buffer_size=2)
    bus.publish("x", 5)
    bus.publish("y", {})
    bus.publish("z", {})
    events = bus.get_recent_events()
    assert [e["type"] for e in events] == ["y", "z"]
    bus.clear_buffer()
    assert bus.get_recent_events() == []
