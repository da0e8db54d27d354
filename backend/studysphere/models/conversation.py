# backend/studysphere/models/conversation.py
"""
Conversation model for per-user-pair messaging.

Each unordered pair of users has exactly one conversation. The pair is
stored in two positional slots sorted by id, so (A, B) and (B, A) collide
on the unique pair index.

Design decisions:
- Unread counters live in their own table, one row per participant, so
  increments and resets are single-row atomic UPDATEs
- Tutor context (type, tutor/student profile) is metadata on the thread and
  never part of its identity
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import CheckConstraint, Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import EncryptedText, UTCDateTime, utcnow

PAIR_INDEX_NAME = "uq_conversations_participant_pair"
LEGACY_PARTICIPANTS_INDEX_NAME = "ix_conversations_participants"


class ConversationType(str, Enum):
    INQUIRY = "inquiry"
    SESSION = "session"


def normalize_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Return the pair in stored (lexicographic) order."""
    first, second = str(user_a), str(user_b)
    return (first, second) if first <= second else (second, first)


class Conversation(Base):
    """
    Two-party conversation thread.

    Attributes:
        id: ULID primary key
        participant_one_id: Lower of the two participant ids
        participant_two_id: Higher of the two participant ids
        last_message: Denormalized preview of the newest message
        last_message_time: When the newest message was sent
        type: inquiry or session
        tutor_profile_id: Tutor profile the thread is about, if any
        student_profile_id: Student profile on the other side, if any
    """

    __tablename__ = "conversations"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    # Nullable only so the repair job can see malformed legacy rows
    participant_one_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    participant_two_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    last_message = Column(EncryptedText, nullable=False, default="")
    last_message_time = Column(UTCDateTime, nullable=True)
    type = Column(String(20), nullable=False, default=ConversationType.INQUIRY.value)
    tutor_profile_id = Column(String(26), ForeignKey("tutor_profiles.id"), nullable=True)
    student_profile_id = Column(String(26), ForeignKey("student_profiles.id"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    unread_rows = relationship(
        "ConversationUnreadCount",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="[Message.created_at, Message.id]",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tutor_profile = relationship("TutorProfile", foreign_keys=[tutor_profile_id])
    student_profile = relationship("StudentProfile", foreign_keys=[student_profile_id])

    __table_args__ = (
        Index(PAIR_INDEX_NAME, "participant_one_id", "participant_two_id", unique=True),
        Index("idx_conversations_participant_two", "participant_two_id"),
        {
            "comment": "One conversation per unordered user pair",
        },
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, participants="
            f"{self.participant_one_id},{self.participant_two_id})>"
        )

    @property
    def participants(self) -> List[Optional[str]]:
        return [self.participant_one_id, self.participant_two_id]

    @property
    def unread_count(self) -> Dict[str, int]:
        """Unread counters keyed by participant id."""
        return {row.user_id: int(row.unread_count or 0) for row in self.unread_rows}

    def is_participant(self, user_id: str) -> bool:
        return bool(user_id) and user_id in (self.participant_one_id, self.participant_two_id)

    def get_other_user_id(self, current_user_id: str) -> Optional[str]:
        """
        Get the ID of the other participant in the conversation.

        Returns None when the other side cannot be determined: the caller is
        not a participant, a slot is empty, or both slots hold the caller.
        """
        if not self.is_participant(current_user_id):
            return None
        if self.participant_one_id == current_user_id:
            other = self.participant_two_id
        else:
            other = self.participant_one_id
        if not other or other == current_user_id:
            return None
        return str(other)

    @property
    def is_normalized(self) -> bool:
        one, two = self.participant_one_id, self.participant_two_id
        return bool(one) and bool(two) and one < two


class ConversationUnreadCount(Base):
    """Per-participant unread counter for a conversation."""

    __tablename__ = "conversation_unread_counts"

    conversation_id = Column(
        String(26), ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String(26), ForeignKey("users.id"), primary_key=True)
    unread_count = Column(Integer, nullable=False, default=0)

    conversation = relationship("Conversation", back_populates="unread_rows")

    __table_args__ = (
        CheckConstraint("unread_count >= 0", name="ck_conversation_unread_non_negative"),
        Index("idx_conversation_unread_user", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConversationUnreadCount(conversation={self.conversation_id}, "
            f"user={self.user_id}, count={self.unread_count})>"
        )
