"""
Database models for the StudySphere messaging core.

- User and the role profiles (identity sources)
- Conversation with its per-participant unread counters
- Message
"""

from .conversation import (
    LEGACY_PARTICIPANTS_INDEX_NAME,
    PAIR_INDEX_NAME,
    Conversation,
    ConversationType,
    ConversationUnreadCount,
    normalize_pair,
)
from .message import Message
from .profiles import StudentProfile, TutorProfile
from .user import User, UserRole

__all__ = [
    "Conversation",
    "ConversationType",
    "ConversationUnreadCount",
    "LEGACY_PARTICIPANTS_INDEX_NAME",
    "Message",
    "PAIR_INDEX_NAME",
    "StudentProfile",
    "TutorProfile",
    "User",
    "UserRole",
    "normalize_pair",
]
