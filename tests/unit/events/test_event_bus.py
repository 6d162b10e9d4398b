"""
Tests for the event bus.
"""

from lognexus.core.events import AlertSuppressed, AuditTrailCleared, Event, EventBus


class TestEventBus:
    """Publish/subscribe behaviour."""

    def test_handlers_receive_their_event_type(self):
        bus = EventBus()
        received = []
        bus.subscribe(AuditTrailCleared, received.append)

        bus.publish(AuditTrailCleared(count=3))
        bus.publish(AlertSuppressed(rule_id="r", reason="cooldown", conditions_met=[]))

        assert received == [AuditTrailCleared(count=3)]

    def test_base_subscription_receives_everything(self):
        bus = EventBus()
        received = []
        bus.subscribe(Event, received.append)

        bus.publish(AuditTrailCleared(count=1))
        bus.publish(AlertSuppressed(rule_id="r", reason="rate_limit", conditions_met=["threshold"]))

        assert len(received) == 2

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(AuditTrailCleared, received.append)

        unsubscribe()
        bus.publish(AuditTrailCleared(count=1))

        assert received == []
        assert bus.handler_count() == 0

    def test_failing_handler_does_not_affect_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(AuditTrailCleared, broken)
        bus.subscribe(AuditTrailCleared, received.append)

        bus.publish(AuditTrailCleared(count=1))

        assert len(received) == 1
