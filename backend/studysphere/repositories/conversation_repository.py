# backend/studysphere/repositories/conversation_repository.py
"""
Conversation Repository for per-user-pair messaging.

Provides data access for conversations and their per-participant unread
counters. Unread counters are only ever changed with single-statement
UPDATEs so concurrent senders cannot lose increments.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, cast

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..models.conversation import Conversation, ConversationUnreadCount, normalize_pair
from .base_repository import BaseRepository

CURSOR_SEPARATOR = "|"


def build_activity_cursor(activity: datetime, conversation_id: str) -> str:
    """Cursor pointing just past a conversation in the activity listing."""
    return f"{activity.isoformat()}{CURSOR_SEPARATOR}{conversation_id}"


def parse_activity_cursor(cursor: str) -> Tuple[datetime, Optional[str]]:
    """Split a listing cursor into (activity time, conversation id or None)."""
    raw_time, _, conversation_id = cursor.partition(CURSOR_SEPARATOR)
    activity = datetime.fromisoformat(raw_time.replace("Z", "+00:00"))
    if activity.tzinfo is None:
        activity = activity.replace(tzinfo=timezone.utc)
    return activity, conversation_id or None


class ConversationRepository(BaseRepository[Conversation]):
    """
    Repository for Conversation entity operations.

    Handles:
    - Looking up conversations by their normalized participant pair
    - Listing conversations for a user
    - Updating the last-message preview and unread counters atomically
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        super().__init__(db, Conversation)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_by_pair(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """
        Find the conversation for a pair, in either argument order.

        The pair is normalized first so this matches the unique pair index
        exactly.
        """
        first, second = normalize_pair(user_a, user_b)
        try:
            result = (
                self.db.query(Conversation)
                .filter(
                    Conversation.participant_one_id == first,
                    Conversation.participant_two_id == second,
                )
                .first()
            )
            return cast(Optional[Conversation], result)
        except SQLAlchemyError as e:
            self.logger.error("Error finding conversation for pair %s/%s: %s", first, second, e)
            raise RepositoryException(f"Failed to find conversation: {e}") from e

    def create_for_pair(
        self,
        user_a: str,
        user_b: str,
        **context: Any,
    ) -> Conversation:
        """
        Insert a conversation plus one zeroed unread row per participant.

        Must be called inside a SAVEPOINT: a uniqueness race surfaces as
        IntegrityError at flush and the caller re-queries.
        """
        first, second = normalize_pair(user_a, user_b)
        conversation = Conversation(
            participant_one_id=first,
            participant_two_id=second,
            **{key: value for key, value in context.items() if value is not None},
        )
        conversation.unread_rows = [
            ConversationUnreadCount(user_id=first, unread_count=0),
            ConversationUnreadCount(user_id=second, unread_count=0),
        ]
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def find_for_user(
        self,
        user_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Sequence[Conversation]:
        """
        Find all conversations where a user is a participant.

        Cursor is "<ISO activity time>|<conversation id>" of the last item
        on the previous page. A bare timestamp is still accepted and skips
        everything at that instant.

        Returns:
            Conversations ordered by most recent activity first
        """
        activity = func.coalesce(Conversation.last_message_time, Conversation.created_at)
        query: Query = self.db.query(Conversation).filter(
            or_(
                Conversation.participant_one_id == user_id,
                Conversation.participant_two_id == user_id,
            )
        )

        if cursor:
            try:
                cursor_time, cursor_id = parse_activity_cursor(cursor)
                if cursor_id:
                    # Ties on activity continue in id order
                    query = query.filter(
                        or_(
                            activity < cursor_time,
                            and_(activity == cursor_time, Conversation.id < cursor_id),
                        )
                    )
                else:
                    query = query.filter(activity < cursor_time)
            except (ValueError, TypeError):
                # Invalid cursor, ignore it
                self.logger.debug("Ignoring invalid conversation cursor %r", cursor)

        query = query.order_by(activity.desc(), Conversation.id.desc())
        try:
            return cast(Sequence[Conversation], query.limit(limit).all())
        except SQLAlchemyError as e:
            self.logger.error("Error listing conversations for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to list conversations: {e}") from e

    def count_for_user(self, user_id: str) -> int:
        """Count conversations where a user is a participant."""
        try:
            return (
                self.db.query(func.count(Conversation.id))
                .filter(
                    or_(
                        Conversation.participant_one_id == user_id,
                        Conversation.participant_two_id == user_id,
                    )
                )
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            self.logger.error("Error counting conversations for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to count conversations: {e}") from e

    def list_all_ordered(self) -> List[Conversation]:
        """Every conversation, oldest first. Used by the maintenance jobs."""
        try:
            return list(
                self.db.query(Conversation)
                .order_by(Conversation.created_at, Conversation.id)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing conversations: %s", e)
            raise RepositoryException(f"Failed to list conversations: {e}") from e

    # ------------------------------------------------------------------
    # Preview and unread counters
    # ------------------------------------------------------------------

    def record_last_message(
        self, conversation_id: str, preview: str, timestamp: datetime
    ) -> int:
        """Set the preview and last message time in one UPDATE. Returns rows matched."""
        try:
            result = self.db.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(
                    last_message=preview,
                    last_message_time=timestamp,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            self._expire_loaded_conversation(
                conversation_id, "last_message", "last_message_time", "updated_at"
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error recording last message on %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to record last message: {e}") from e

    def increment_unread(self, conversation_id: str, user_id: str, amount: int = 1) -> int:
        """
        Atomically add to one participant's unread counter.

        A missing counter row (legacy data) is created with the amount.
        """
        try:
            result = self.db.execute(
                update(ConversationUnreadCount)
                .where(
                    and_(
                        ConversationUnreadCount.conversation_id == conversation_id,
                        ConversationUnreadCount.user_id == user_id,
                    )
                )
                .values(unread_count=ConversationUnreadCount.unread_count + amount)
                .execution_options(synchronize_session="fetch")
            )
            if not result.rowcount:
                self.db.add(
                    ConversationUnreadCount(
                        conversation_id=conversation_id, user_id=user_id, unread_count=amount
                    )
                )
                self.db.flush()
            return amount
        except SQLAlchemyError as e:
            self.logger.error("Error incrementing unread on %s for %s: %s", conversation_id, user_id, e)
            raise RepositoryException(f"Failed to increment unread count: {e}") from e

    def reset_unread(self, conversation_id: str, user_id: Optional[str] = None) -> int:
        """Zero one participant's counter, or every counter when user_id is None."""
        criteria = [ConversationUnreadCount.conversation_id == conversation_id]
        if user_id is not None:
            criteria.append(ConversationUnreadCount.user_id == user_id)
        try:
            result = self.db.execute(
                update(ConversationUnreadCount)
                .where(and_(*criteria))
                .values(unread_count=0)
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error resetting unread on %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to reset unread count: {e}") from e

    def _expire_loaded_conversation(self, conversation_id: str, *attrs: str) -> None:
        """Make an already-loaded Conversation reload the given columns on next access."""
        loaded = self.db.identity_map.get(self.db.identity_key(Conversation, conversation_id))
        if loaded is not None:
            self.db.expire(loaded, list(attrs) or None)

    def ensure_unread_row(self, conversation_id: str, user_id: str) -> None:
        try:
            existing = self.db.get(ConversationUnreadCount, (conversation_id, user_id))
            if existing is None:
                self.db.add(
                    ConversationUnreadCount(
                        conversation_id=conversation_id, user_id=user_id, unread_count=0
                    )
                )
                self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error("Error ensuring unread row on %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to ensure unread row: {e}") from e

    def get_unread_counts(self, conversation_id: str) -> Dict[str, int]:
        """Current counters for a conversation, read straight from the table."""
        try:
            rows = self.db.execute(
                select(ConversationUnreadCount.user_id, ConversationUnreadCount.unread_count).where(
                    ConversationUnreadCount.conversation_id == conversation_id
                )
            ).all()
            return {str(user_id): int(count or 0) for user_id, count in rows}
        except SQLAlchemyError as e:
            self.logger.error("Error reading unread counts on %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to read unread counts: {e}") from e

    def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        return self.get_unread_counts(conversation_id).get(user_id, 0)

    def get_unread_counts_for_user(self, user_id: str) -> Dict[str, int]:
        """Unread count per conversation id for one user."""
        try:
            rows = self.db.execute(
                select(
                    ConversationUnreadCount.conversation_id, ConversationUnreadCount.unread_count
                ).where(ConversationUnreadCount.user_id == user_id)
            ).all()
            return {str(conversation_id): int(count or 0) for conversation_id, count in rows}
        except SQLAlchemyError as e:
            self.logger.error("Error reading unread counts for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to read unread counts: {e}") from e

    def total_unread_for_user(self, user_id: str) -> Tuple[int, int]:
        """Return (sum of unread counters, number of conversations) for a user."""
        try:
            total = self.db.execute(
                select(func.coalesce(func.sum(ConversationUnreadCount.unread_count), 0))
                .join(Conversation, Conversation.id == ConversationUnreadCount.conversation_id)
                .where(ConversationUnreadCount.user_id == user_id)
            ).scalar()
        except SQLAlchemyError as e:
            self.logger.error("Error summing unread for %s: %s", user_id, e)
            raise RepositoryException(f"Failed to sum unread counts: {e}") from e
        return int(total or 0), self.count_for_user(user_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def swap_slots(self, conversation: Conversation) -> None:
        """Put the participant slots in sorted order; flushes so collisions surface."""
        first, second = normalize_pair(
            str(conversation.participant_one_id), str(conversation.participant_two_id)
        )
        conversation.participant_one_id = first
        conversation.participant_two_id = second
        self.db.flush()

    def delete_conversation(self, conversation: Conversation) -> None:
        try:
            # Messages are moved before a delete; never cascade a stale collection
            self.db.expire(conversation, ["messages"])
            self.db.delete(conversation)
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error("Error deleting conversation %s: %s", conversation.id, e)
            raise RepositoryException(f"Failed to delete conversation: {e}") from e
