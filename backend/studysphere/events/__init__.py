"""Domain events emitted by the messaging core."""

from studysphere.events.message_events import ConversationCleared, ConversationRead, MessageSent
from studysphere.events.publisher import Event, EventPublisher, EventSubscriber

__all__ = [
    "ConversationCleared",
    "ConversationRead",
    "Event",
    "EventPublisher",
    "EventSubscriber",
    "MessageSent",
]
