"""Tests for ConversationRepository write paths."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from studysphere.models import Conversation
from studysphere.repositories.conversation_repository import (
    ConversationRepository,
    build_activity_cursor,
    parse_activity_cursor,
)


@pytest.fixture
def repository(db) -> ConversationRepository:
    return ConversationRepository(db)


def test_failed_flush_in_savepoint_keeps_session_usable(db, repository, make_user) -> None:
    a, b = make_user(), make_user()
    with repository.savepoint():
        original = repository.create_for_pair(a.id, b.id)

    with pytest.raises(IntegrityError):
        with repository.savepoint():
            repository.create_for_pair(b.id, a.id)

    assert repository.find_by_pair(a.id, b.id).id == original.id
    db.commit()
    assert db.query(Conversation).count() == 1


def test_record_last_message_expires_loaded_instance(db, repository, make_user) -> None:
    a, b = make_user(), make_user()
    conversation = repository.create_for_pair(a.id, b.id)
    when = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    assert repository.record_last_message(conversation.id, "hello", when) == 1

    assert conversation.last_message == "hello"
    assert conversation.last_message_time == when


def test_activity_cursor_carries_id() -> None:
    when = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    cursor = build_activity_cursor(when, "01HCONV")

    assert parse_activity_cursor(cursor) == (when, "01HCONV")
    assert parse_activity_cursor("2024-05-01T09:30:00") == (when, None)
