# backend/studysphere/repositories/profile_repository.py
"""
Repositories for the role-specific profile tables.
"""

from typing import Optional

from sqlalchemy.orm import Session

from ..models.profiles import StudentProfile, TutorProfile
from .base_repository import BaseRepository


class TutorProfileRepository(BaseRepository[TutorProfile]):
    def __init__(self, db: Session):
        super().__init__(db, TutorProfile)

    def find_by_user_id(self, user_id: str) -> Optional[TutorProfile]:
        return self.find_one_by(user_id=user_id)


class StudentProfileRepository(BaseRepository[StudentProfile]):
    def __init__(self, db: Session):
        super().__init__(db, StudentProfile)

    def find_by_user_id(self, user_id: str) -> Optional[StudentProfile]:
        return self.find_one_by(user_id=user_id)
