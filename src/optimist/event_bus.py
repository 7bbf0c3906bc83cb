"""
EventBus for in-process pub/sub of reconciliation events.

Provides thread-safe event subscription and publishing for engine lifecycle
events. UI layers subscribe to an entity's changes; tooling can subscribe to
lifecycle events across all entities.

Usage:
    bus = EventBus()

    # Subscribe to specific event types
    bus.subscribe('operation.rolled_back', lambda event: print(event.state))

    # Subscribe to one entity's events only
    bus.subscribe('entity.changed', render_todo, key='todo-1')

    # Subscribe to all events
    bus.subscribe('*', lambda event: log_event(event))
"""

from typing import Callable, Dict, List, Any, Optional, Tuple
from threading import Lock
import logging

logger = logging.getLogger(__name__)

_Topic = Tuple[str, Optional[str]]


class EventBus:
    """
    Thread-safe in-process event bus for pub/sub.

    Supports:
    - subscribe(event_type, callback): Register callbacks for specific event types
    - subscribe(event_type, callback, key=entity_id): Only events for one entity
    - publish(event): Emit events to all matching subscribers, in registration order
    - Wildcard subscription: subscribe('*', callback) receives all events

    Subscriber exceptions are logged and contained; they never propagate
    into the publisher.
    """

    def __init__(self):
        """Initialize empty event bus with thread safety."""
        # (event_type, key) -> list of callbacks
        self._subscribers: Dict[_Topic, List[Callable[[Any], None]]] = {}
        self._lock = Lock()

    def subscribe(
        self,
        event_type: str,
        callback: Callable[[Any], None],
        key: Optional[str] = None,
    ) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event type to listen for (e.g., 'operation.confirmed')
                       Use '*' to subscribe to all event types
            callback: Function called with event object when event occurs
            key: Optional entity id; only events whose entity_id matches are delivered
        """
        with self._lock:
            self._subscribers.setdefault((event_type, key), []).append(callback)
            logger.debug(
                f"Subscribed to {event_type}"
                f"{'[' + key + ']' if key else ''}: "
                f"{getattr(callback, '__name__', 'lambda')}"
            )

    def unsubscribe(
        self,
        event_type: str,
        callback: Callable[[Any], None],
        key: Optional[str] = None,
    ) -> bool:
        """
        Unsubscribe a callback from an event type.

        Returns:
            True if callback was found and removed, False otherwise
        """
        topic = (event_type, key)
        with self._lock:
            if topic in self._subscribers:
                try:
                    self._subscribers[topic].remove(callback)
                    if not self._subscribers[topic]:
                        # Clean up empty subscriber lists
                        del self._subscribers[topic]
                    logger.debug(f"Unsubscribed from {event_type}")
                    return True
                except ValueError:
                    pass
        return False

    def publish(self, event: Any) -> None:
        """
        Publish an event to all matching subscribers.

        Notifies, in order:
        1. Subscribers to the specific event type
        2. Subscribers to the event type keyed on the event's entity_id
        3. Wildcard subscribers ('*')

        Args:
            event: Event object (must have 'event_type' attribute)
        """
        if not hasattr(event, 'event_type'):
            logger.warning(f"Event missing 'event_type' attribute: {type(event).__name__}")
            return

        event_type = event.event_type
        entity_id = getattr(event, 'entity_id', None)

        # Copy subscriber lists to avoid holding lock during callbacks
        with self._lock:
            callbacks = list(self._subscribers.get((event_type, None), []))
            if entity_id is not None:
                callbacks += self._subscribers.get((event_type, entity_id), [])
            callbacks += self._subscribers.get(('*', None), [])

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in subscriber callback for {event_type}: {e}", exc_info=True)

        logger.debug(f"Published {event_type} to {len(callbacks)} subscribers")

    def clear(self) -> None:
        """
        Clear all subscriptions.

        Useful for testing and cleanup.
        """
        with self._lock:
            self._subscribers.clear()
            logger.debug("Cleared all subscriptions")

    def subscriber_count(self, event_type: str = None) -> int:
        """
        Get count of subscribers.

        Args:
            event_type: Optional event type to count (keyed subscriptions
                        included). If None, returns total.
        """
        with self._lock:
            if event_type:
                return sum(
                    len(subs) for (etype, _), subs in self._subscribers.items()
                    if etype == event_type
                )
            else:
                return sum(len(subs) for subs in self._subscribers.values())


__all__ = ['EventBus']
