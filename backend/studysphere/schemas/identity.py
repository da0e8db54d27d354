# backend/studysphere/schemas/identity.py
"""
Display identity of a conversation participant.

Derived on every request and never stored.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ResolvedIdentity(BaseModel):
    """Canonical display identity; ``name`` is never empty."""

    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    profile_image: Optional[str] = None
    role: str = "unknown"

    model_config = ConfigDict(frozen=True)
