# backend/studysphere/models/message.py
"""
Message model for the chat system.

Messages are append-only; only the read flag ever changes after insert.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import EncryptedText, UTCDateTime, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    conversation_id = Column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    content = Column(EncryptedText, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    read = Column(Boolean, nullable=False, default=False)
    # Client-supplied idempotency key for retried sends
    client_message_id = Column(String(64), nullable=True)

    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", foreign_keys=[sender_id])

    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        UniqueConstraint("sender_id", "client_message_id", name="uq_messages_sender_client_id"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, conversation={self.conversation_id}, sender={self.sender_id})>"
