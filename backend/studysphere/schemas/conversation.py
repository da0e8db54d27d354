# backend/studysphere/schemas/conversation.py
"""
Pydantic schemas for conversation API.

Provides request/response models for the per-user-pair conversation endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .identity import ResolvedIdentity


class TutorInfo(BaseModel):
    """Tutor context attached to a conversation."""

    id: str
    user_id: str
    specialization: Optional[str] = None
    qualification: Optional[str] = None
    subjects: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ConversationListItem(BaseModel):
    """Single conversation in the inbox list."""

    id: str
    other_user: ResolvedIdentity
    last_message: str = ""
    last_message_time: Optional[datetime] = None
    unread_count: int = 0
    type: str = "inquiry"
    tutor_info: Optional[TutorInfo] = None
    created_at: Optional[datetime] = None


class ConversationListResponse(BaseModel):
    """Response for GET /conversations."""

    conversations: List[ConversationListItem]
    next_cursor: Optional[str] = None


class StartConversationRequest(BaseModel):
    """Request to start (or reopen) a conversation with a user or tutor profile."""

    recipient_id: str = Field(..., min_length=1, max_length=26)


class StartConversationResponse(BaseModel):
    """Response for POST /conversations."""

    conversation: ConversationListItem
    created: bool  # False if conversation already existed


class MessageResponse(BaseModel):
    """Single message in a conversation."""

    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    read: bool = False
    is_from_me: bool = False
    client_message_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MessagesResponse(BaseModel):
    """Response for GET /conversations/{id}/messages."""

    messages: List[MessageResponse]
    total_count: int
    page: int
    limit: int
    has_more: bool = False


class SendMessageRequest(BaseModel):
    """
    Request to send a message.

    Exactly one of conversation_id or recipient_id addresses the message.
    """

    conversation_id: Optional[str] = None
    recipient_id: Optional[str] = None
    content: str = Field(..., min_length=1)
    client_message_id: Optional[str] = Field(None, min_length=1, max_length=64)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "SendMessageRequest":
        if bool(self.conversation_id) == bool(self.recipient_id):
            raise ValueError("Provide exactly one of conversation_id or recipient_id")
        return self


class SendMessageResponse(BaseModel):
    """Response for POST /conversations/messages."""

    message: MessageResponse
    conversation_id: str
    created: bool


class MarkReadResponse(BaseModel):
    conversation_id: str
    unread_count: int = 0
    messages_marked: int = 0


class UnreadCountResponse(BaseModel):
    """Badge count: unread messages summed across the caller's conversations."""

    unread_count: int
    conversation_count: int


class ClearConversationResponse(BaseModel):
    conversation_id: str
    deleted_messages: int
