"""Event publisher - hands domain events to in-process subscribers."""
from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Protocol, Sequence

logger = logging.getLogger(__name__)


class Event(Protocol):
    """Protocol for event types."""

    def to_dict(self) -> Dict[str, Any]:
        ...


EventSubscriber = Callable[[str, Dict[str, Any]], None]


class EventPublisher:
    """
    Publishes domain events to registered subscribers.

    External notifiers (email, push) subscribe here; the core only emits.
    A failing subscriber is logged and never affects the caller.
    """

    def __init__(self) -> None:
        self._subscribers: List[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers = [existing for existing in self._subscribers if existing is not subscriber]

    @property
    def subscribers(self) -> Sequence[EventSubscriber]:
        return tuple(self._subscribers)

    def publish(self, event: Event) -> None:
        event_type = type(event).__name__
        payload = event.to_dict()

        # Convert datetime objects to ISO strings for JSON serialization
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()

        for subscriber in list(self._subscribers):
            try:
                subscriber(event_type, dict(payload))
            except Exception:
                logger.exception("Event subscriber failed for %s: %s", event_type, subscriber)
