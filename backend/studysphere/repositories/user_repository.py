# backend/studysphere/repositories/user_repository.py
"""
User Repository.

Read-mostly access to users for identity resolution and the display-name
backfill.
"""

from typing import Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_many(self, user_ids: Iterable[str]) -> List[User]:
        ids = [user_id for user_id in set(user_ids) if user_id]
        if not ids:
            return []
        try:
            return list(self.db.query(User).filter(User.id.in_(ids)).all())
        except SQLAlchemyError as e:
            self.logger.error("Error loading users %s: %s", ids, e)
            raise RepositoryException(f"Failed to load users: {e}") from e

    def find_by_email(self, email: str) -> Optional[User]:
        return self.find_one_by(email=email)

    def list_all_ordered(self) -> Sequence[User]:
        """All users, oldest first; the maintenance backfill filters placeholders itself."""
        try:
            return self.db.query(User).order_by(User.created_at, User.id).all()
        except SQLAlchemyError as e:
            self.logger.error("Error listing users: %s", e)
            raise RepositoryException(f"Failed to list users: {e}") from e
