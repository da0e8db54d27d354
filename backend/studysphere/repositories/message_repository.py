# backend/studysphere/repositories/message_repository.py
"""
Message Repository.

Messages are append-only; the only in-place change is the read flag.
"""

from typing import List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.message import Message
from .base_repository import BaseRepository


class MessageRepository(BaseRepository[Message]):
    def __init__(self, db: Session):
        super().__init__(db, Message)

    def find_by_client_id(self, sender_id: str, client_message_id: str) -> Optional[Message]:
        """Find a previously stored message by the sender's idempotency key."""
        return self.find_one_by(sender_id=sender_id, client_message_id=client_message_id)

    def list_for_conversation(
        self, conversation_id: str, offset: int = 0, limit: int = 50
    ) -> List[Message]:
        """Messages oldest first. Ties on created_at fall back to the ULID id."""
        try:
            return list(
                self.db.execute(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(Message.created_at.asc(), Message.id.asc())
                    .offset(offset)
                    .limit(limit)
                ).scalars()
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing messages for %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to list messages: {e}") from e

    def count_for_conversation(self, conversation_id: str) -> int:
        try:
            return int(
                self.db.execute(
                    select(func.count(Message.id)).where(Message.conversation_id == conversation_id)
                ).scalar()
                or 0
            )
        except SQLAlchemyError as e:
            self.logger.error("Error counting messages for %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to count messages: {e}") from e

    def mark_read_for_reader(self, conversation_id: str, reader_id: str) -> int:
        """Flip the read flag on messages the other side sent. Returns rows changed."""
        try:
            result = self.db.execute(
                update(Message)
                .where(
                    and_(
                        Message.conversation_id == conversation_id,
                        Message.sender_id != reader_id,
                        Message.read.is_(False),
                    )
                )
                .values(read=True)
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error marking messages read in %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to mark messages read: {e}") from e

    def delete_for_conversation(self, conversation_id: str) -> int:
        try:
            result = self.db.execute(
                delete(Message)
                .where(Message.conversation_id == conversation_id)
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error deleting messages in %s: %s", conversation_id, e)
            raise RepositoryException(f"Failed to delete messages: {e}") from e

    def reassign_conversation(self, from_conversation_id: str, to_conversation_id: str) -> int:
        """Move every message of one conversation onto another."""
        try:
            result = self.db.execute(
                update(Message)
                .where(Message.conversation_id == from_conversation_id)
                .values(conversation_id=to_conversation_id)
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error(
                "Error moving messages %s -> %s: %s", from_conversation_id, to_conversation_id, e
            )
            raise RepositoryException(f"Failed to move messages: {e}") from e
