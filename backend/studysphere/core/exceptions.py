# backend/studysphere/core/exceptions.py
"""
Domain-specific exceptions for the StudySphere messaging core.

Services raise these; the API layer converts them with
``to_http_exception`` so that an empty conversation is distinguishable
from a missing one.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class UnauthorizedException(DomainException):
    """Raised when user is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class TransientStoreException(DomainException):
    """
    Raised when the underlying store fails for a reason unrelated to the request.

    The core never retries these itself: retrying a send could append the
    same message twice. Clients should retry with a client_message_id.
    """

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message or "The message store is temporarily unavailable",
            code="STORE_UNAVAILABLE",
            details=details or {},
        )

    def to_http_exception(self) -> HTTPException:
        exc = super().to_http_exception()
        exc.headers = {"Retry-After": "2"}
        return exc


class ConversationNotFoundException(NotFoundException):
    """Raised when a conversation id does not exist."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            message="Conversation not found",
            code="CONVERSATION_NOT_FOUND",
            details={"conversation_id": conversation_id},
        )


class NotAParticipantException(ValidationException):
    """Raised when a sender is not one of the conversation's participants."""

    def __init__(self, conversation_id: str, user_id: str) -> None:
        super().__init__(
            message="Sender is not a participant of this conversation",
            code="NOT_A_PARTICIPANT",
            details={"conversation_id": conversation_id, "user_id": user_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
