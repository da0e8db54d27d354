# backend/studysphere/models/profiles.py
"""
Role-specific profile extensions.

Each profile points back at its User. They are only a secondary source
when resolving a participant's display identity.
"""

from sqlalchemy import JSON, Column, ForeignKey, String
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime, utcnow


class TutorProfile(Base):
    __tablename__ = "tutor_profiles"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    specialization = Column(String(200), nullable=True)
    qualification = Column(String(200), nullable=True)
    subjects = Column(JSON, nullable=False, default=list)
    teaching_modes = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", foreign_keys=[user_id])

    def __repr__(self) -> str:
        return f"<TutorProfile(id={self.id}, user_id={self.user_id})>"


class StudentProfile(Base):
    __tablename__ = "student_profiles"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    grade = Column(String(50), nullable=True)
    subjects = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    user = relationship("User", foreign_keys=[user_id])

    def __repr__(self) -> str:
        return f"<StudentProfile(id={self.id}, user_id={self.user_id})>"
