"""Unit Tests for EventBus

Tests: EventBus subscribe/publish, keyed subscriptions, thread safety,
wildcard subscriptions, subscriber error isolation
"""
import threading
from unittest.mock import Mock

import pytest

from optimist.event_bus import EventBus
from optimist.events import EntityChangedEvent, OperationConfirmedEvent, OperationRolledBackEvent


def changed(entity_id="todo-1", cause="submitted"):
    return EntityChangedEvent(entity_id=entity_id, state={"done": True}, version=1, cause=cause)


class TestEventBusBasics:
    """Tests for core EventBus functionality."""

    def test_instantiation(self):
        """Can instantiate EventBus."""
        bus = EventBus()
        assert bus._subscribers == {}
        assert bus.subscriber_count() == 0

    def test_subscribe_creates_subscription(self):
        """Subscribe adds callback to subscription list."""
        bus = EventBus()
        callback = Mock()

        bus.subscribe('operation.confirmed', callback)

        assert ('operation.confirmed', None) in bus._subscribers
        assert callback in bus._subscribers[('operation.confirmed', None)]

    def test_publish_calls_subscribers_in_order(self):
        """Callbacks run in registration order."""
        bus = EventBus()
        calls = []
        bus.subscribe('entity.changed', lambda e: calls.append('first'))
        bus.subscribe('entity.changed', lambda e: calls.append('second'))

        bus.publish(changed())

        assert calls == ['first', 'second']

    def test_publish_only_matching_type(self):
        """Subscribers of other event types are not called."""
        bus = EventBus()
        confirmed_cb = Mock()
        changed_cb = Mock()
        bus.subscribe('operation.confirmed', confirmed_cb)
        bus.subscribe('entity.changed', changed_cb)

        bus.publish(changed())

        confirmed_cb.assert_not_called()
        changed_cb.assert_called_once()

    def test_wildcard_receives_everything(self):
        """'*' subscribers get all event types."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback)

        bus.publish(changed())
        bus.publish(OperationConfirmedEvent(op_id="op-1", entity_id="todo-1", version=2, state={}))

        assert callback.call_count == 2

    def test_event_without_type_ignored(self):
        """Objects lacking event_type are dropped with a warning."""
        bus = EventBus()
        callback = Mock()
        bus.subscribe('*', callback)

        bus.publish(object())

        callback.assert_not_called()


class TestKeyedSubscriptions:
    """Tests for per-entity subscriptions."""

    def test_keyed_subscriber_only_sees_its_entity(self):
        bus = EventBus()
        todo1 = Mock()
        todo2 = Mock()
        bus.subscribe('entity.changed', todo1, key='todo-1')
        bus.subscribe('entity.changed', todo2, key='todo-2')

        bus.publish(changed('todo-1'))

        todo1.assert_called_once()
        todo2.assert_not_called()

    def test_unsubscribe_keyed(self):
        bus = EventBus()
        callback = Mock()
        bus.subscribe('entity.changed', callback, key='todo-1')

        assert bus.unsubscribe('entity.changed', callback) is False
        assert bus.unsubscribe('entity.changed', callback, key='todo-1') is True

        bus.publish(changed('todo-1'))
        callback.assert_not_called()
        assert bus.subscriber_count() == 0

    def test_subscriber_count_includes_keyed(self):
        bus = EventBus()
        bus.subscribe('entity.changed', Mock())
        bus.subscribe('entity.changed', Mock(), key='todo-1')
        bus.subscribe('operation.confirmed', Mock())

        assert bus.subscriber_count('entity.changed') == 2
        assert bus.subscriber_count() == 3


class TestSubscriberErrors:
    """A failing subscriber must not affect the publisher or other subscribers."""

    def test_error_contained_and_logged(self, caplog):
        bus = EventBus()
        after = Mock()

        def broken(event):
            raise RuntimeError("render failed")

        bus.subscribe('operation.rolled_back', broken)
        bus.subscribe('operation.rolled_back', after)

        bus.publish(OperationRolledBackEvent(
            op_id="op-1", entity_id="todo-1", previous_snapshot={}, state={}, reason="terminal",
        ))

        after.assert_called_once()
        assert "render failed" in caplog.text


class TestThreadSafety:
    """Concurrent subscribe/publish."""

    def test_concurrent_subscribe(self):
        bus = EventBus()

        def worker():
            for _ in range(50):
                bus.subscribe('entity.changed', Mock())

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert bus.subscriber_count('entity.changed') == 200

    def test_clear(self):
        bus = EventBus()
        bus.subscribe('*', Mock())
        bus.clear()
        assert bus.subscriber_count() == 0
