"""Tests for the in-process event bus."""

import logging

import pytest

from mailstream.core.events import EventBus


@pytest.fixture
def bus():
    return EventBus()


def test_publish_in_registration_order(bus):
    """Test subscribers are called in the order they subscribed."""
    calls = []
    bus.subscribe("mail", lambda payload: calls.append(("a", payload)))
    bus.subscribe("mail", lambda payload: calls.append(("b", payload)))

    delivered = bus.publish("mail", 1)

    assert calls == [("a", 1), ("b", 1)]
    assert delivered == 2


def test_failing_subscriber_is_isolated(bus, caplog):
    """Test a raising subscriber is logged and later ones still run."""
    calls = []

    def broken(payload):
        raise ValueError("boom")

    bus.subscribe("mail", broken)
    bus.subscribe("mail", calls.append)

    with caplog.at_level(logging.ERROR, logger="mailstream"):
        delivered = bus.publish("mail", "record")

    assert calls == ["record"]
    assert delivered == 1
    assert "Subscriber failed" in caplog.text


def test_unsubscribe_during_publish_uses_snapshot(bus):
    """Test removing a subscriber mid-publish only affects later publishes."""
    calls = []

    def second(payload):
        calls.append(("second", payload))

    def first(payload):
        calls.append(("first", payload))
        bus.unsubscribe(second)

    bus.subscribe("mail", first)
    bus.subscribe("mail", second)

    bus.publish("mail", 1)
    bus.publish("mail", 2)

    assert calls == [("first", 1), ("second", 1), ("first", 2)]


def test_subscribe_during_publish_waits_for_next_publish(bus):
    """Test a subscriber added mid-publish is not called for that payload."""
    late = []

    def adder(payload):
        bus.subscribe("mail", late.append)

    bus.subscribe("mail", adder)

    bus.publish("mail", 1)
    bus.publish("mail", 2)

    assert late == [2]


def test_unsubscribe_scoped_to_event(bus):
    """Test unsubscribing from one event keeps other subscriptions."""
    calls = []
    bus.subscribe("mail", calls.append)
    bus.subscribe("error", calls.append)

    assert bus.unsubscribe(calls.append, "mail") is True
    bus.publish("mail", "m")
    bus.publish("error", "e")

    assert calls == ["e"]


def test_unsubscribe_unknown_handler(bus):
    """Test unsubscribing something never subscribed reports False."""
    assert bus.unsubscribe(print) is False


def test_bound_methods_can_be_unsubscribed(bus):
    """Test equal bound methods match the registered handler."""
    collected = []
    bus.subscribe("mail", collected.append)

    assert bus.unsubscribe(collected.append) is True
    assert bus.subscribers("mail") == []


def test_duplicate_subscription_is_delivered_once(bus):
    """Test subscribing the same handler twice registers it once."""
    calls = []
    bus.subscribe("mail", calls.append)
    bus.subscribe("mail", calls.append)

    bus.publish("mail", 1)

    assert calls == [1]


def test_subscribe_requires_callable(bus):
    """Test non-callables are rejected."""
    with pytest.raises(TypeError):
        bus.subscribe("mail", "not callable")


def test_publish_without_subscribers(bus):
    """Test publishing to nobody is a no-op."""
    assert bus.publish("flags", object()) == 0
