"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_current_user_id
from .services import (
    get_conversation_service,
    get_delivery_bus,
    get_message_service,
    get_session_registry,
)

__all__ = [
    # Auth
    "get_current_user_id",
    # Services
    "get_conversation_service",
    "get_message_service",
    # Realtime
    "get_session_registry",
    "get_delivery_bus",
]
