from datetime import datetime, timezone
from itertools import count
from typing import Callable, Iterator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from studysphere.database import Base, configure_sqlite

# Import models so Base.metadata is populated for create_all.
import studysphere.models  # noqa: F401
from studysphere.models import (
    Conversation,
    ConversationUnreadCount,
    Message,
    StudentProfile,
    TutorProfile,
    User,
)

_sequence = count(1)


@pytest.fixture(scope="session")
def _unit_engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # Legacy-shaped rows (placeholder participants) must be insertable
    configure_sqlite(engine, foreign_keys=False)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(_unit_engine: Engine) -> Iterator[Session]:
    """
    Provide a transactional session bound to the shared in-memory engine.

    Service commits only release a SAVEPOINT; everything is rolled back
    when the test ends.
    """
    connection = _unit_engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        expire_on_commit=False,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    def _make_user(
        id: Optional[str] = None,
        first_name: str = "Test",
        last_name: str = "User",
        email: Optional[str] = None,
        role: str = "student",
        profile_image: Optional[str] = None,
    ) -> User:
        n = next(_sequence)
        user = User(
            first_name=first_name,
            last_name=last_name,
            email=email if email is not None else f"user{n}@example.com",
            role=role,
            profile_image=profile_image,
        )
        if id is not None:
            user.id = id
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_tutor_profile(db: Session) -> Callable[..., TutorProfile]:
    def _make(user: User, **kwargs: object) -> TutorProfile:
        profile = TutorProfile(
            user_id=user.id,
            specialization=kwargs.get("specialization", "Mathematics"),
            qualification=kwargs.get("qualification", "MSc"),
            subjects=kwargs.get("subjects", ["algebra"]),
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def make_student_profile(db: Session) -> Callable[..., StudentProfile]:
    def _make(user: User, grade: str = "10") -> StudentProfile:
        profile = StudentProfile(user_id=user.id, grade=grade, subjects=[])
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def make_raw_conversation(db: Session) -> Callable[..., Conversation]:
    """
    Insert a conversation exactly as given, bypassing normalization.

    Used to reproduce legacy rows: swapped slots, duplicates, missing slots.
    """

    def _make(
        participant_one_id: Optional[str],
        participant_two_id: Optional[str],
        created_at: Optional[datetime] = None,
        unread: Optional[dict] = None,
        last_message: str = "",
        last_message_time: Optional[datetime] = None,
        id: Optional[str] = None,
    ) -> Conversation:
        conversation = Conversation(
            participant_one_id=participant_one_id,
            participant_two_id=participant_two_id,
            created_at=created_at or datetime.now(timezone.utc),
            last_message=last_message,
            last_message_time=last_message_time,
        )
        if id is not None:
            conversation.id = id
        conversation.unread_rows = [
            ConversationUnreadCount(user_id=user_id, unread_count=amount)
            for user_id, amount in (unread or {}).items()
        ]
        db.add(conversation)
        db.commit()
        return conversation

    return _make


@pytest.fixture
def make_message(db: Session) -> Callable[..., Message]:
    def _make(
        conversation: Conversation,
        sender_id: str,
        content: str = "hello",
        created_at: Optional[datetime] = None,
    ) -> Message:
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            content=content,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(message)
        db.commit()
        return message

    return _make

