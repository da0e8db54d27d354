# backend/studysphere/routes/v1/__init__.py
"""
API v1 Routes

Versioned API endpoints under /api/v1.
"""

from . import conversations

__all__ = [
    "conversations",
]
