# backend/studysphere/services/identity_resolver.py
"""
Identity Resolver for conversation participants.

Turns a bare participant reference into a display identity. User rows are
known to carry blank or placeholder names, so resolution degrades through
a fixed chain and never fails:

1. The User row itself, when both name parts are present
2. The role profile's linked User (tutor or student only)
3. A name derived from the email local part
4. "{Role} {last 4 of id}"

Lookups that raise or find nothing count as "no data" and the chain moves
on. Nothing here writes to storage; the maintenance backfill persists
derived names separately.
"""

import logging
from typing import Dict, Iterable, Optional, Union

from ..models.user import User
from ..repositories.profile_repository import StudentProfileRepository, TutorProfileRepository
from ..repositories.user_repository import UserRepository
from ..schemas.identity import ResolvedIdentity

logger = logging.getLogger(__name__)

UNKNOWN_USER_NAME = "Unknown User"
UNKNOWN_ROLE = "unknown"
PROFILE_ROLES = ("tutor", "student")

UserRef = Union[str, User, None]


def _capitalize(segment: str) -> str:
    return segment[:1].upper() + segment[1:]


def display_name_from_email(email: Optional[str]) -> Optional[str]:
    """
    Derive a display name from an email's local part.

    ``a.lee@acme.com`` -> ``A Lee``; ``alice@acme.com`` -> ``Alice``.
    Returns None when the email is unusable.
    """
    if not email or "@" not in email:
        return None
    local_part = email.strip().split("@", 1)[0]
    if "." in local_part:
        segments = [segment for segment in local_part.split(".") if segment]
        name = " ".join(_capitalize(segment) for segment in segments)
    else:
        name = _capitalize(local_part)
    return name or None


def role_label(role: Optional[str]) -> str:
    cleaned = (role or "").strip().lower()
    if not cleaned or cleaned == UNKNOWN_ROLE:
        return "User"
    return _capitalize(cleaned)


def display_name_from_identifier(user_id: Optional[str], role: Optional[str]) -> str:
    """Last-resort name: ``"Tutor 68a0"``, or just the role label for an empty id."""
    label = role_label(role)
    suffix = str(user_id or "").strip()[-4:]
    return f"{label} {suffix}" if suffix else label


def _complete_name(user: Optional[User]) -> Optional[str]:
    if user is None:
        return None
    first = (user.first_name or "").strip()
    last = (user.last_name or "").strip()
    if first and last:
        return f"{first} {last}"
    return None


class IdentityResolver:
    """
    Resolve participant references to ResolvedIdentity.

    The repositories are injected so tests can pass in-memory fakes.
    """

    def __init__(
        self,
        user_repository: UserRepository,
        tutor_profile_repository: TutorProfileRepository,
        student_profile_repository: StudentProfileRepository,
    ):
        self.user_repository = user_repository
        self.tutor_profile_repository = tutor_profile_repository
        self.student_profile_repository = student_profile_repository

    def _fetch_user(self, user_id: str) -> Optional[User]:
        try:
            return self.user_repository.get_by_id(user_id)
        except Exception as exc:
            logger.warning("[IDENTITY] User lookup failed for %s: %s", user_id, exc)
            return None

    def _fetch_profile_user(self, user_id: str, role: str) -> Optional[User]:
        repository = (
            self.tutor_profile_repository if role == "tutor" else self.student_profile_repository
        )
        try:
            profile = repository.find_by_user_id(user_id)
            if profile is None:
                return None
            return self.user_repository.get_by_id(profile.user_id)
        except Exception as exc:
            logger.warning("[IDENTITY] %s profile lookup failed for %s: %s", role, user_id, exc)
            return None

    def resolve(self, user_ref: UserRef) -> ResolvedIdentity:
        """Resolve one participant. Never raises; ``name`` is never empty."""
        if user_ref is None:
            return ResolvedIdentity(name=UNKNOWN_USER_NAME, role=UNKNOWN_ROLE)

        if isinstance(user_ref, User):
            user_id = str(user_ref.id or "")
            seed: Optional[User] = user_ref
        else:
            user_id = str(user_ref)
            seed = None

        email = seed.email if seed is not None else None
        profile_image = seed.profile_image if seed is not None else None
        role = (seed.role if seed is not None else None) or UNKNOWN_ROLE

        # 1. Primary lookup
        name: Optional[str] = None
        user = self._fetch_user(user_id) if user_id else None
        if user is not None:
            email = user.email or email
            profile_image = user.profile_image or profile_image
            role = user.role or role
            name = _complete_name(user)
        elif seed is not None:
            name = _complete_name(seed)

        # 2. Role profile's linked user
        if name is None and user_id and role in PROFILE_ROLES:
            linked = self._fetch_profile_user(user_id, role)
            if linked is not None:
                name = _complete_name(linked)
                email = linked.email or email
                profile_image = linked.profile_image or profile_image

        # 3. Email, then 4. identifier
        if name is None:
            name = display_name_from_email(email)
            if name is not None:
                logger.debug("[IDENTITY] Derived name from email for %s", user_id)
        if name is None:
            name = display_name_from_identifier(user_id, role)
            logger.debug("[IDENTITY] Falling back to identifier name for %s", user_id)

        return ResolvedIdentity(
            id=user_id or None,
            name=name,
            email=email,
            profile_image=profile_image,
            role=role,
        )

    def resolve_many(self, user_refs: Iterable[UserRef]) -> Dict[str, ResolvedIdentity]:
        """Resolve a batch, looking each distinct id up once."""
        resolved: Dict[str, ResolvedIdentity] = {}
        for ref in user_refs:
            key = str(ref.id) if isinstance(ref, User) else str(ref or "")
            if key in resolved:
                continue
            resolved[key] = self.resolve(ref if ref != "" else None)
        return resolved
