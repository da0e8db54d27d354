"""Pydantic schemas for the StudySphere messaging API."""

from .conversation import (
    ClearConversationResponse,
    ConversationListItem,
    ConversationListResponse,
    MarkReadResponse,
    MessageResponse,
    MessagesResponse,
    SendMessageRequest,
    SendMessageResponse,
    StartConversationRequest,
    StartConversationResponse,
    TutorInfo,
    UnreadCountResponse,
)
from .identity import ResolvedIdentity

__all__ = [
    "ClearConversationResponse",
    "ConversationListItem",
    "ConversationListResponse",
    "MarkReadResponse",
    "MessageResponse",
    "MessagesResponse",
    "ResolvedIdentity",
    "SendMessageRequest",
    "SendMessageResponse",
    "StartConversationRequest",
    "StartConversationResponse",
    "TutorInfo",
    "UnreadCountResponse",
]
