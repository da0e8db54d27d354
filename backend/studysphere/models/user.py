# backend/studysphere/models/user.py
"""
User model, the identity anchor for conversation participants.

Name fields may be blank on legacy rows; the identity resolver tolerates
that and the maintenance backfill repairs it.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, String
import ulid

from ..database import Base
from .types import UTCDateTime, utcnow


class UserRole(str, Enum):
    STUDENT = "student"
    TUTOR = "tutor"
    ADMIN = "admin"


class User(Base):
    """
    Platform user.

    Users are never hard-deleted; ``is_active`` carries soft state.
    """

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    # Nullable for legacy rows created without one
    email = Column(String(255), unique=True, nullable=True, index=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    role = Column(String(20), nullable=False, default=UserRole.STUDENT.value)
    profile_image = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    @property
    def full_name(self) -> str:
        return f"{(self.first_name or '').strip()} {(self.last_name or '').strip()}".strip()

    @property
    def has_complete_name(self) -> bool:
        return bool((self.first_name or "").strip()) and bool((self.last_name or "").strip())
