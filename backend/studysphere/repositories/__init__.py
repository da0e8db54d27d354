"""
Repository layer for the StudySphere messaging core.

Repositories own data access only; services own transactions.
"""

from .base_repository import BaseRepository, IRepository
from .conversation_repository import ConversationRepository
from .factory import RepositoryFactory
from .message_repository import MessageRepository
from .profile_repository import StudentProfileRepository, TutorProfileRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "IRepository",
    "MessageRepository",
    "RepositoryFactory",
    "StudentProfileRepository",
    "TutorProfileRepository",
    "UserRepository",
]
