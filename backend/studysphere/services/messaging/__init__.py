"""
Realtime messaging package.

- SessionRegistry: user id -> live session queues
- plan_deliveries / DeliveryBus: fan new messages and unread deltas out to
  sessions, optionally across workers through Broadcaster
- create_sse_stream: drain one session's queue as Server-Sent Events
"""

from studysphere.services.messaging.delivery import Delivery, DeliveryBus, plan_deliveries
from studysphere.services.messaging.events import (
    SCHEMA_VERSION,
    EventType,
    build_event,
    format_sse_event,
)
from studysphere.services.messaging.session_registry import SessionConnection, SessionRegistry
from studysphere.services.messaging.sse_stream import create_sse_stream

__all__ = [
    # Sessions
    "SessionConnection",
    "SessionRegistry",
    # Delivery
    "Delivery",
    "DeliveryBus",
    "plan_deliveries",
    # SSE Stream
    "create_sse_stream",
    # Events
    "EventType",
    "SCHEMA_VERSION",
    "build_event",
    "format_sse_event",
]
