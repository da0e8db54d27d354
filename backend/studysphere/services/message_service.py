# backend/studysphere/services/message_service.py
"""
Message Service.

Appends messages to a conversation's log and performs the full "send"
unit of work: resolve the conversation, append, then update the preview
and the recipient's unread counter in the same transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConversationNotFoundException,
    NotAParticipantException,
    ValidationException,
)
from ..models.conversation import Conversation
from ..models.message import Message
from ..models.types import as_utc, utcnow
from ..repositories.conversation_repository import ConversationRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from .base import BaseService
from .conversation_service import ConversationService

logger = logging.getLogger(__name__)

_TIMESTAMP_STEP = timedelta(microseconds=1)


@dataclass
class SentMessage:
    """Outcome of a send, handed to the realtime delivery bus."""

    message: Message
    conversation: Conversation
    recipient_ids: List[str]
    created: bool = True
    unread_count: Dict[str, int] = field(default_factory=dict)

    @property
    def participant_ids(self) -> List[str]:
        return [str(p) for p in self.conversation.participants if p]


@dataclass
class MessagePage:
    messages: List[Message]
    total_count: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total_count


class MessageService(BaseService):
    """Service for the append-only message log."""

    def __init__(
        self,
        db: Session,
        conversation_service: Optional[ConversationService] = None,
        message_repository: Optional[MessageRepository] = None,
        conversation_repository: Optional[ConversationRepository] = None,
    ):
        super().__init__(db)
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.conversation_service = conversation_service or ConversationService(
            db,
            conversation_repository=self.conversation_repository,
            message_repository=self.message_repository,
        )
        self.logger = logging.getLogger(__name__)

    def validate_content(self, content: Optional[str]) -> str:
        if content is None or not content.strip():
            raise ValidationException("Message content cannot be empty", code="EMPTY_MESSAGE")
        if len(content) > settings.max_message_length:
            raise ValidationException(
                f"Message cannot exceed {settings.max_message_length} characters",
                code="MESSAGE_TOO_LONG",
                details={"max_length": settings.max_message_length, "length": len(content)},
            )
        return content

    def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        timestamp: Optional[datetime] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """
        Append a message to a conversation's log. Does not commit.

        The stored timestamp is nudged forward when needed so it is strictly
        later than the conversation's previous message: append order and
        created_at order always agree.

        Raises:
            ConversationNotFoundException: Unknown conversation
            ValidationException: Sender not a participant, or bad content
        """
        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundException(conversation_id)
        if not conversation.is_participant(sender_id):
            raise NotAParticipantException(conversation_id, sender_id)
        content = self.validate_content(content)

        created_at = as_utc(timestamp) or utcnow()
        previous = as_utc(conversation.last_message_time)
        if previous is not None and created_at <= previous:
            created_at = previous + _TIMESTAMP_STEP

        return self.message_repository.create(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=created_at,
            read=False,
            client_message_id=client_message_id,
        )

    def _sent_for_existing(self, message: Message, sender_id: str) -> "SentMessage":
        conversation = self.conversation_repository.get_by_id(message.conversation_id)
        if conversation is None:
            raise ConversationNotFoundException(message.conversation_id)
        return SentMessage(
            message=message,
            conversation=conversation,
            recipient_ids=[str(p) for p in conversation.participants if p and p != sender_id],
            created=False,
            unread_count=self.conversation_repository.get_unread_counts(conversation.id),
        )

    @BaseService.measure_operation("send_message")
    def send_message(
        self,
        sender_id: str,
        content: str,
        conversation_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> SentMessage:
        """
        Send a message to an existing conversation or to a user.

        Exactly one of ``conversation_id`` or ``recipient_id`` is required.
        A repeated ``client_message_id`` from the same sender returns the
        stored message instead of appending again. On any failure nothing
        is written.
        """
        if bool(conversation_id) == bool(recipient_id):
            raise ValidationException(
                "Provide exactly one of conversation_id or recipient_id",
                code="INVALID_MESSAGE_TARGET",
            )
        self.validate_content(content)

        with self.transaction():
            if client_message_id:
                existing = self.message_repository.find_by_client_id(sender_id, client_message_id)
                if existing is not None:
                    self.logger.info(
                        "Duplicate send %s from %s; returning stored message",
                        client_message_id,
                        sender_id,
                    )
                    return self._sent_for_existing(existing, sender_id)

            if recipient_id:
                conversation, _ = self.conversation_service.get_or_create_pair(
                    sender_id, recipient_id
                )
            else:
                found = self.conversation_repository.get_by_id(str(conversation_id))
                if found is None:
                    raise ConversationNotFoundException(str(conversation_id))
                conversation = found

            try:
                with self.message_repository.savepoint():
                    message = self.append(
                        conversation.id,
                        sender_id,
                        content,
                        client_message_id=client_message_id,
                    )
            except IntegrityError:
                # Same client_message_id raced in from another request
                existing = (
                    self.message_repository.find_by_client_id(sender_id, client_message_id)
                    if client_message_id
                    else None
                )
                if existing is None:
                    raise
                return self._sent_for_existing(existing, sender_id)

            unread = self.conversation_service.record_message(
                conversation.id, sender_id, content, message.created_at
            )

        self.logger.info(
            "Message sent",
            extra={
                "conversation_id": conversation.id,
                "message_id": message.id,
                "sender_id": sender_id,
            },
        )
        return SentMessage(
            message=message,
            conversation=conversation,
            recipient_ids=[str(p) for p in conversation.participants if p and p != sender_id],
            created=True,
            unread_count=unread,
        )

    @BaseService.measure_operation("list_by_conversation")
    def list_by_conversation(
        self,
        conversation_id: str,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> MessagePage:
        """Messages oldest first, paginated by page number."""
        if page < 1:
            raise ValidationException("page must be >= 1", code="INVALID_PAGE")
        limit = min(max(1, limit or settings.message_page_size), settings.max_message_page_size)

        with self.store_guard():
            conversation = self.conversation_service.get_for_participant(conversation_id, user_id)
            total = self.message_repository.count_for_conversation(conversation.id)
            messages = self.message_repository.list_for_conversation(
                conversation.id, offset=(page - 1) * limit, limit=limit
            )
        return MessagePage(messages=messages, total_count=total, page=page, limit=limit)
