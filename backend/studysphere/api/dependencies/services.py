# backend/studysphere/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Request-scoped services get a fresh database session from ``get_db``.
The session registry and delivery bus are per-worker singletons created
in the application lifespan and stored on ``app.state``.
"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ...database import get_db
from ...services.conversation_service import ConversationService
from ...services.message_service import MessageService
from ...services.messaging import DeliveryBus, SessionRegistry


def get_conversation_service(db: Session = Depends(get_db)) -> ConversationService:
    """Dependency for ConversationService."""
    return ConversationService(db)


def get_message_service(
    db: Session = Depends(get_db),
    conversation_service: ConversationService = Depends(get_conversation_service),
) -> MessageService:
    """MessageService sharing the request's session and ConversationService."""
    return MessageService(
        db,
        conversation_service=conversation_service,
        message_repository=conversation_service.message_repository,
        conversation_repository=conversation_service.conversation_repository,
    )


def get_session_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry = request.app.state.session_registry
    return registry


def get_delivery_bus(request: Request) -> DeliveryBus:
    bus: DeliveryBus = request.app.state.delivery_bus
    return bus
