"""Event bus for publishing agent progress and results."""
import logging
import threading
from collections import defaultdict, deque
from typing import Callable

from coinagent.models import Event

logger = logging.getLogger(__name__)


class EventBus:
    """Thread-safe pub/sub event bus.

    Consumers (progress displays, alerting) subscribe to event types such as
    "asset_analyzed" or "cycle_complete". The last ``history_size`` events are
    kept so a late subscriber can replay the progress of a running cycle.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: dict[str, list[Callable[[Event], None]]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, event_types: list[str], callback: Callable[[Event], None]) -> None:
        """Register callback for specific event types.

        Args:
            event_types: List of event types to subscribe to. Use ["*"] for all events.
            callback: Function to call when matching event is published.
        """
        with self._lock:
            for event_type in event_types:
                self._subscribers[event_type].append(callback)
                logger.debug(f"Subscribed {getattr(callback, '__name__', callback)} to {event_type}")

    def unsubscribe(self, callback: Callable[[Event], None]) -> None:
        """Remove callback from all subscriptions."""
        with self._lock:
            for event_type in list(self._subscribers.keys()):
                if callback in self._subscribers[event_type]:
                    self._subscribers[event_type].remove(callback)

    def publish(self, event: Event) -> None:
        """Send event to all subscribers of its type.

        Subscriber errors are logged and never reach the publisher.
        """
        with self._lock:
            self._history.append(event)
            callbacks = list(
                self._subscribers.get(event.type, []) +
                self._subscribers.get("*", [])
            )

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in subscriber {getattr(callback, '__name__', callback)}: {e}")

    def recent(self, event_type: str | None = None) -> list[Event]:
        """Return buffered events, oldest first, optionally filtered by type."""
        with self._lock:
            events = list(self._history)
        if event_type is None:
            return events
        return [e for e in events if e.type == event_type]
