# backend/studysphere/services/messaging/events.py
"""
Realtime event type definitions and builders.

All events follow this structure:
{
    "type": str,           # Event type identifier
    "schema_version": int, # Schema version (currently 1)
    "timestamp": str,      # ISO 8601 timestamp
    "payload": dict        # Event-specific data
}
"""

from datetime import datetime, timezone
from enum import Enum
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Valid realtime event types."""

    NEW_MESSAGE = "new_message"
    UNREAD_DELTA = "unread_delta"
    READ_RECEIPT = "read_receipt"
    CONVERSATION_CLEARED = "conversation_cleared"


# Current schema version - increment when payload structure changes
SCHEMA_VERSION = 1


def build_event(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a properly structured event.

    Args:
        event_type: The type of event
        payload: Event-specific payload data

    Returns:
        Complete event dict ready for publishing
    """
    return {
        "type": event_type.value,
        "schema_version": SCHEMA_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


def build_new_message_event(
    message_id: str,
    content: str,
    sender_id: str,
    conversation_id: str,
    recipient_ids: List[str],
    created_at: datetime,
    unread_count: Optional[Dict[str, int]] = None,
    client_message_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a new_message event."""
    return build_event(
        EventType.NEW_MESSAGE,
        {
            "message": {
                "id": message_id,
                "conversation_id": conversation_id,
                "content": content,
                "sender_id": sender_id,
                "created_at": created_at.isoformat(),
                "read": False,
                "client_message_id": client_message_id,
            },
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "recipient_ids": recipient_ids,
            "unread_count": dict(unread_count or {}),
        },
    )


def build_unread_delta_event(
    conversation_id: str,
    user_id: str,
    unread_count: int,
    delta: int = 1,
) -> Dict[str, Any]:
    """Build an unread_delta event for one recipient."""
    return build_event(
        EventType.UNREAD_DELTA,
        {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "delta": delta,
            "unread_count": unread_count,
        },
    )


def build_read_receipt_event(
    conversation_id: str,
    reader_id: str,
    messages_marked: int = 0,
) -> Dict[str, Any]:
    """Build a read_receipt event."""
    return build_event(
        EventType.READ_RECEIPT,
        {
            "conversation_id": conversation_id,
            "reader_id": reader_id,
            "messages_marked": messages_marked,
            "unread_count": 0,
            "read_at": datetime.now(timezone.utc).isoformat(),
        },
    )


def build_conversation_cleared_event(
    conversation_id: str,
    cleared_by: str,
    deleted_messages: int = 0,
) -> Dict[str, Any]:
    """Build a conversation_cleared event."""
    return build_event(
        EventType.CONVERSATION_CLEARED,
        {
            "conversation_id": conversation_id,
            "cleared_by": cleared_by,
            "deleted_messages": deleted_messages,
            "cleared_at": datetime.now(timezone.utc).isoformat(),
        },
    )


def format_sse_event(event: Dict[str, Any], user_id: str) -> Dict[str, str]:
    """
    Format a queued event for SSE output.

    - new_message events get an ``id`` field and an ``is_mine`` flag
    - Other events pass their payload through unchanged
    """
    event_type = event.get("type", "unknown")
    payload = dict(event.get("payload", event))

    if event_type == EventType.NEW_MESSAGE.value:
        message_data = payload.get("message", {})
        payload["is_mine"] = message_data.get("sender_id") == user_id
        result: Dict[str, str] = {
            "event": EventType.NEW_MESSAGE.value,
            "data": json.dumps(payload),
        }
        message_id = message_data.get("id")
        if message_id:
            result["id"] = message_id
        return result

    if event_type not in {item.value for item in EventType}:
        logger.warning("[SSE-STREAM] Unknown event type: %s", event_type)
    return {
        "event": str(event_type),
        "data": json.dumps(payload),
    }
