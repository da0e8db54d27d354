# backend/studysphere/services/conversation_service.py
"""
Conversation Service for per-user-pair messaging.

Handles business logic for the conversation system including:
- Finding or creating the single conversation for a user pair
- Listing conversations decorated with the other participant's identity
- Recording sends (preview plus atomic unread increment)
- Read receipts, the unread badge and clearing a conversation
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Dict, List, Optional, Set, Tuple, cast

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    ConversationNotFoundException,
    ForbiddenException,
    NotAParticipantException,
    NotFoundException,
    ValidationException,
)
from ..events.message_events import ConversationCleared, ConversationRead
from ..models.conversation import Conversation, ConversationType, normalize_pair
from ..models.user import UserRole
from ..repositories.conversation_repository import ConversationRepository, build_activity_cursor
from ..repositories.factory import RepositoryFactory
from ..repositories.message_repository import MessageRepository
from ..repositories.profile_repository import StudentProfileRepository, TutorProfileRepository
from ..repositories.user_repository import UserRepository
from ..schemas.conversation import ConversationListItem, TutorInfo
from .base import BaseService
from .identity_resolver import IdentityResolver

logger = logging.getLogger(__name__)


@dataclass
class ConversationContext:
    """Optional metadata applied when a conversation is first created."""

    type: str = ConversationType.INQUIRY.value
    tutor_profile_id: Optional[str] = None
    student_profile_id: Optional[str] = None

    def as_columns(self) -> Dict[str, Optional[str]]:
        return {
            "type": self.type,
            "tutor_profile_id": self.tutor_profile_id,
            "student_profile_id": self.student_profile_id,
        }


def _activity_time(conversation: Conversation) -> Optional[datetime]:
    return conversation.last_message_time or conversation.created_at


class ConversationService(BaseService):
    """
    Service for managing per-user-pair conversations.

    Methods named for a public operation own their transaction. Methods used
    inside a send (``get_or_create_pair``, ``record_message``) never commit;
    the caller's transaction covers them.
    """

    def __init__(
        self,
        db: Session,
        conversation_repository: Optional[ConversationRepository] = None,
        message_repository: Optional[MessageRepository] = None,
        user_repository: Optional[UserRepository] = None,
        tutor_profile_repository: Optional[TutorProfileRepository] = None,
        student_profile_repository: Optional[StudentProfileRepository] = None,
        identity_resolver: Optional[IdentityResolver] = None,
    ):
        super().__init__(db)
        self.conversation_repository = (
            conversation_repository or RepositoryFactory.create_conversation_repository(db)
        )
        self.message_repository = message_repository or RepositoryFactory.create_message_repository(
            db
        )
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)
        self.tutor_profile_repository = (
            tutor_profile_repository or RepositoryFactory.create_tutor_profile_repository(db)
        )
        self.student_profile_repository = (
            student_profile_repository or RepositoryFactory.create_student_profile_repository(db)
        )
        self.identity_resolver = identity_resolver or IdentityResolver(
            self.user_repository,
            self.tutor_profile_repository,
            self.student_profile_repository,
        )
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_pair(self, user_a: str, user_b: str) -> None:
        if not user_a or not user_b:
            raise ValidationException(
                "Both participants are required",
                code="INVALID_PARTICIPANTS",
                details={"participants": [user_a, user_b]},
            )
        if user_a == user_b:
            raise ValidationException(
                "Cannot start a conversation with yourself",
                code="SELF_CONVERSATION",
                details={"user_id": user_a},
            )
        found = {user.id for user in self.user_repository.get_many([user_a, user_b])}
        missing = [user_id for user_id in (user_a, user_b) if user_id not in found]
        if missing:
            raise NotFoundException(
                "User not found", code="USER_NOT_FOUND", details={"user_ids": missing}
            )

    def get_or_create_pair(
        self,
        user_a: str,
        user_b: str,
        context: Optional[ConversationContext] = None,
    ) -> Tuple[Conversation, bool]:
        """
        Return the pair's conversation, creating it if needed. Does not commit.

        Creation runs in a SAVEPOINT. If a concurrent request inserted the
        same pair first, the unique pair index rejects ours and the winner
        is returned instead.
        """
        self._validate_pair(user_a, user_b)
        first, second = normalize_pair(user_a, user_b)

        existing = self.conversation_repository.find_by_pair(first, second)
        if existing is not None:
            return existing, False

        context = context or ConversationContext()
        if context.type not in {item.value for item in ConversationType}:
            raise ValidationException(
                "Unknown conversation type",
                code="INVALID_CONVERSATION_TYPE",
                details={"type": context.type},
            )

        try:
            with self.conversation_repository.savepoint():
                conversation = self.conversation_repository.create_for_pair(
                    first, second, **context.as_columns()
                )
        except IntegrityError:
            self.logger.info(
                "Conversation for pair %s/%s created concurrently; using existing", first, second
            )
            winner = self.conversation_repository.find_by_pair(first, second)
            if winner is None:
                raise ConflictException(
                    "Conversation could not be created",
                    code="CONVERSATION_CONFLICT",
                    details={"participants": [first, second]},
                )
            return winner, False

        self.logger.info(
            "Created conversation %s for pair %s/%s",
            conversation.id,
            first,
            second,
            extra={"conversation_id": conversation.id, "type": conversation.type},
        )
        return conversation, True

    @BaseService.measure_operation("find_or_create")
    def find_or_create(
        self,
        user_a: str,
        user_b: str,
        context: Optional[ConversationContext] = None,
    ) -> Tuple[Conversation, bool]:
        """
        Get existing conversation or create new one.

        (A, B) and (B, A) always return the same conversation.

        Returns:
            Tuple of (conversation, created) where created is True if new
        """
        with self.transaction():
            return self.get_or_create_pair(user_a, user_b, context)

    def _resolve_recipient_id(self, recipient_ref: str) -> str:
        """Accept a user id or a tutor profile id."""
        if self.user_repository.get_by_id(recipient_ref) is not None:
            return recipient_ref
        tutor_profile = self.tutor_profile_repository.get_by_id(recipient_ref)
        if tutor_profile is not None:
            return str(tutor_profile.user_id)
        raise NotFoundException(
            "Recipient not found", code="RECIPIENT_NOT_FOUND", details={"recipient_id": recipient_ref}
        )

    def _infer_context(self, user_id: str, recipient_id: str) -> ConversationContext:
        """Attach tutor and student profiles when the pair is one of each."""
        users = {user.id: user for user in self.user_repository.get_many([user_id, recipient_id])}
        roles = {uid: (users[uid].role if uid in users else None) for uid in (user_id, recipient_id)}
        tutor_id = next((uid for uid, role in roles.items() if role == UserRole.TUTOR.value), None)
        student_id = next(
            (uid for uid, role in roles.items() if role == UserRole.STUDENT.value), None
        )
        if tutor_id is None or student_id is None:
            return ConversationContext()

        tutor_profile = self.tutor_profile_repository.find_by_user_id(tutor_id)
        student_profile = self.student_profile_repository.find_by_user_id(student_id)
        return ConversationContext(
            tutor_profile_id=tutor_profile.id if tutor_profile else None,
            student_profile_id=student_profile.id if student_profile else None,
        )

    @BaseService.measure_operation("start_conversation")
    def start_conversation(
        self, user_id: str, recipient_ref: str
    ) -> Tuple[ConversationListItem, bool]:
        """
        Start (or reopen) a conversation from the caller's side.

        ``recipient_ref`` may be a user id or a tutor profile id.
        """
        with self.transaction():
            recipient_id = self._resolve_recipient_id(recipient_ref)
            if recipient_id == user_id:
                raise ValidationException(
                    "Cannot start a conversation with yourself",
                    code="SELF_CONVERSATION",
                    details={"user_id": user_id},
                )
            context = self._infer_context(user_id, recipient_id)
            conversation, created = self.get_or_create_pair(user_id, recipient_id, context)

        item = self._build_item(conversation, user_id, require_other=False)
        return cast(ConversationListItem, item), created

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        """Load a conversation the caller takes part in, or raise 404/403."""
        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundException(conversation_id)
        if not conversation.is_participant(user_id):
            raise ForbiddenException(
                "You are not a participant of this conversation",
                code="NOT_A_PARTICIPANT",
                details={"conversation_id": conversation_id},
            )
        return conversation

    def _tutor_info(self, conversation: Conversation) -> Optional[TutorInfo]:
        profile = conversation.tutor_profile
        if profile is None:
            return None
        return TutorInfo(
            id=profile.id,
            user_id=profile.user_id,
            specialization=profile.specialization,
            qualification=profile.qualification,
            subjects=[str(subject) for subject in (profile.subjects or [])],
        )

    def _build_item(
        self,
        conversation: Conversation,
        user_id: str,
        unread_count: Optional[int] = None,
        existing_user_ids: Optional[Set[str]] = None,
        require_other: bool = True,
    ) -> Optional[ConversationListItem]:
        other_id = conversation.get_other_user_id(user_id)
        if require_other:
            if other_id is None:
                return None
            if existing_user_ids is not None and other_id not in existing_user_ids:
                return None

        if unread_count is None:
            unread_count = self.conversation_repository.get_unread_count(conversation.id, user_id)

        return ConversationListItem(
            id=conversation.id,
            other_user=self.identity_resolver.resolve(other_id),
            last_message=conversation.last_message or "",
            last_message_time=conversation.last_message_time,
            unread_count=unread_count,
            type=conversation.type or ConversationType.INQUIRY.value,
            tutor_info=self._tutor_info(conversation),
            created_at=conversation.created_at,
        )

    @BaseService.measure_operation("list_for_user")
    def list_for_user(
        self,
        user_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ConversationListItem], Optional[str]]:
        """
        List a user's conversations, most recently active first.

        Each item carries the other participant's identity and the caller's
        own unread count. Conversations whose other participant cannot be
        determined are left out.

        Returns:
            Tuple of (items, next_cursor)
        """
        limit = min(
            max(1, limit or settings.conversation_page_size),
            settings.max_conversation_page_size,
        )
        with self.store_guard():
            conversations = list(
                self.conversation_repository.find_for_user(user_id, limit=limit, cursor=cursor)
            )
            unread = self.conversation_repository.get_unread_counts_for_user(user_id)
            other_ids = [conversation.get_other_user_id(user_id) for conversation in conversations]
            existing = {user.id for user in self.user_repository.get_many(i for i in other_ids if i)}

            items: List[ConversationListItem] = []
            for conversation in conversations:
                item = self._build_item(
                    conversation,
                    user_id,
                    unread_count=unread.get(conversation.id, 0),
                    existing_user_ids=existing,
                )
                if item is None:
                    self.logger.debug(
                        "Skipping conversation %s with undeterminable participant", conversation.id
                    )
                    continue
                items.append(item)

        next_cursor = None
        if len(conversations) == limit and conversations:
            last_activity = _activity_time(conversations[-1])
            if last_activity:
                next_cursor = build_activity_cursor(last_activity, str(conversations[-1].id))
        return items, next_cursor

    @BaseService.measure_operation("get_conversation")
    def get_conversation(self, conversation_id: str, user_id: str) -> ConversationListItem:
        with self.store_guard():
            conversation = self.get_for_participant(conversation_id, user_id)
            item = self._build_item(conversation, user_id, require_other=False)
        return cast(ConversationListItem, item)

    @BaseService.measure_operation("total_unread")
    def total_unread(self, user_id: str) -> Tuple[int, int]:
        """Return (unread messages across all conversations, conversation count)."""
        with self.store_guard():
            return self.conversation_repository.total_unread_for_user(user_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_message(
        self,
        conversation_id: str,
        sender_id: str,
        preview: str,
        timestamp: datetime,
    ) -> Dict[str, int]:
        """
        Update the preview and bump the other participant's unread counter.

        Does not commit; runs inside the send's transaction so the message
        insert and these updates land together.

        Returns:
            The conversation's unread counters after the update
        """
        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise ConversationNotFoundException(conversation_id)
        if not conversation.is_participant(sender_id):
            raise NotAParticipantException(conversation_id, sender_id)

        self.conversation_repository.record_last_message(
            conversation_id, (preview or "")[: settings.message_preview_length], timestamp
        )
        other_id = conversation.get_other_user_id(sender_id)
        if other_id:
            self.conversation_repository.increment_unread(conversation_id, other_id)
        return self.conversation_repository.get_unread_counts(conversation_id)

    @BaseService.measure_operation("mark_read")
    def mark_read(self, conversation_id: str, user_id: str) -> ConversationRead:
        """Reset the caller's unread counter and flip read flags. Idempotent."""
        with self.transaction():
            conversation = self.get_for_participant(conversation_id, user_id)
            self.conversation_repository.reset_unread(conversation.id, user_id)
            self.conversation_repository.ensure_unread_row(conversation.id, user_id)
            marked = self.message_repository.mark_read_for_reader(conversation.id, user_id)
            participants = [str(p) for p in conversation.participants if p]

        self.logger.debug("Marked %d messages read in %s for %s", marked, conversation_id, user_id)
        return ConversationRead(
            conversation_id=conversation_id,
            reader_id=user_id,
            messages_marked=marked,
            participant_ids=participants,
        )

    @BaseService.measure_operation("clear_conversation")
    def clear_conversation(self, conversation_id: str, user_id: str) -> ConversationCleared:
        """Delete every message, blank the preview and zero all unread counters."""
        with self.transaction():
            conversation = self.get_for_participant(conversation_id, user_id)
            deleted = self.message_repository.delete_for_conversation(conversation.id)
            self.conversation_repository.update(conversation.id, last_message="")
            self.conversation_repository.reset_unread(conversation.id)
            participants = [p for p in conversation.participants if p]

        self.logger.info(
            "Cleared conversation %s (%d messages)",
            conversation_id,
            deleted,
            extra={"conversation_id": conversation_id, "cleared_by": user_id},
        )
        return ConversationCleared(
            conversation_id=conversation_id,
            cleared_by=user_id,
            participant_ids=[str(p) for p in participants],
            deleted_messages=deleted,
        )
