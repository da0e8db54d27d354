"""Conversation domain events."""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List


@dataclass
class MessageSent:
    """Fired after a message is stored and its conversation updated."""

    message_id: str
    conversation_id: str
    sender_id: str
    recipient_ids: List[str]
    created_at: datetime
    preview: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationRead:
    """Fired when a participant's unread counter is reset."""

    conversation_id: str
    reader_id: str
    messages_marked: int = 0
    participant_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConversationCleared:
    """Fired after a participant clears a conversation's messages."""

    conversation_id: str
    cleared_by: str
    participant_ids: List[str] = field(default_factory=list)
    deleted_messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
