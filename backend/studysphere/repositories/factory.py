# backend/studysphere/repositories/factory.py
"""
Repository Factory.

Central place for constructing repositories so services can take them as
optional constructor arguments and tests can substitute fakes.
"""

from sqlalchemy.orm import Session

from .conversation_repository import ConversationRepository
from .message_repository import MessageRepository
from .profile_repository import StudentProfileRepository, TutorProfileRepository
from .user_repository import UserRepository


class RepositoryFactory:
    """Factory for creating repository instances."""

    @staticmethod
    def create_user_repository(db: Session) -> UserRepository:
        return UserRepository(db)

    @staticmethod
    def create_tutor_profile_repository(db: Session) -> TutorProfileRepository:
        return TutorProfileRepository(db)

    @staticmethod
    def create_student_profile_repository(db: Session) -> StudentProfileRepository:
        return StudentProfileRepository(db)

    @staticmethod
    def create_conversation_repository(db: Session) -> ConversationRepository:
        return ConversationRepository(db)

    @staticmethod
    def create_message_repository(db: Session) -> MessageRepository:
        return MessageRepository(db)
