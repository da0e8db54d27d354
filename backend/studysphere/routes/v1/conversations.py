# backend/studysphere/routes/v1/conversations.py
"""
Conversations routes - API v1

Versioned conversation endpoints under /api/v1/conversations.
All business logic delegated to ConversationService and MessageService.

Routes have ZERO direct DB access - all operations go through service layer.
Sync service calls run in a worker thread so the event loop never blocks.

Endpoints:
    GET /                               -> List user's conversations
    POST /                              -> Start (or reopen) a conversation
    GET /unread-count                   -> Unread badge
    GET /stream                         -> SSE stream of realtime events
    GET /{conversation_id}              -> Get conversation details
    GET /{conversation_id}/messages     -> Get messages with pagination
    POST /messages                      -> Send a message
    POST /{conversation_id}/read        -> Mark conversation read
    DELETE /{conversation_id}/messages  -> Clear a conversation
"""

import asyncio
import logging
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from ...api.dependencies.auth import get_current_user_id
from ...api.dependencies.services import (
    get_conversation_service,
    get_delivery_bus,
    get_message_service,
    get_session_registry,
)
from ...models.message import Message
from ...schemas.conversation import (
    ClearConversationResponse,
    ConversationListItem,
    ConversationListResponse,
    MarkReadResponse,
    MessageResponse,
    MessagesResponse,
    SendMessageRequest,
    SendMessageResponse,
    StartConversationRequest,
    StartConversationResponse,
    UnreadCountResponse,
)
from ...services.conversation_service import ConversationService
from ...services.message_service import MessageService
from ...services.messaging import DeliveryBus, SessionRegistry, create_sse_stream

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["conversations-v1"])


def _message_response(message: Message, user_id: str) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content=message.content,
        created_at=message.created_at,
        read=bool(message.read),
        is_from_me=message.sender_id == user_id,
        client_message_id=message.client_message_id,
    )


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    limit: Optional[int] = Query(None, ge=1, le=100),
    cursor: Optional[str] = Query(None, description="Pagination cursor (ISO timestamp)"),
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationListResponse:
    """
    List all conversations for the current user.

    One entry per conversation partner, most recently active first.
    """
    items, next_cursor = await asyncio.to_thread(
        service.list_for_user, user_id, limit=limit, cursor=cursor
    )
    return ConversationListResponse(conversations=items, next_cursor=next_cursor)


@router.post("", response_model=StartConversationResponse)
async def start_conversation(
    request: StartConversationRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> StartConversationResponse:
    """
    Start a conversation with a user or a tutor profile.

    If the conversation already exists, returns the existing one.
    """
    item, created = await asyncio.to_thread(
        service.start_conversation, user_id, request.recipient_id
    )
    return StartConversationResponse(conversation=item, created=created)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> UnreadCountResponse:
    unread, conversation_count = await asyncio.to_thread(service.total_unread, user_id)
    return UnreadCountResponse(unread_count=unread, conversation_count=conversation_count)


@router.get(
    "/stream",
    responses={
        200: {"description": "SSE stream established for the user's sessions"},
        401: {"description": "Not authenticated"},
    },
)
async def stream_events(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    registry: SessionRegistry = Depends(get_session_registry),
) -> EventSourceResponse:
    """
    SSE endpoint for realtime conversation events.

    Each connection registers its own session; a user with several tabs
    receives every event on each of them. There is no catch-up on
    reconnect: clients re-fetch the conversation list and messages.
    """
    logger.info("[SSE] Connection attempt", extra={"user_id": user_id})

    async def event_generator() -> AsyncGenerator[Dict[str, str], None]:
        connection = registry.register(user_id)
        async for event in create_sse_stream(connection, registry):
            if await request.is_disconnected():
                break
            yield event

    return EventSourceResponse(
        event_generator(),
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
        },
        media_type="text/event-stream",
    )


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
    bus: DeliveryBus = Depends(get_delivery_bus),
) -> SendMessageResponse:
    """
    Send a message to a conversation or directly to a user.

    The message is stored and then published while the conversation's
    lock is held, so live sessions see messages in the order they were
    stored.
    """
    service.validate_content(request.content)

    conversation_id = request.conversation_id
    if not conversation_id:
        conversation, _ = await asyncio.to_thread(
            service.conversation_service.find_or_create, user_id, str(request.recipient_id)
        )
        conversation_id = conversation.id

    async with bus.conversation_lock(conversation_id):
        sent = await asyncio.to_thread(
            service.send_message,
            user_id,
            request.content,
            conversation_id=conversation_id,
            client_message_id=request.client_message_id,
        )
        await bus.publish(sent)

    return SendMessageResponse(
        message=_message_response(sent.message, user_id),
        conversation_id=sent.conversation.id,
        created=sent.created,
    )


@router.get("/{conversation_id}", response_model=ConversationListItem)
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationListItem:
    """Get details for a single conversation."""
    return await asyncio.to_thread(service.get_conversation, conversation_id, user_id)


@router.get("/{conversation_id}/messages", response_model=MessagesResponse)
async def get_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
) -> MessagesResponse:
    """
    Get messages for a conversation with pagination.

    Messages are returned in chronological order (oldest first).
    """
    result = await asyncio.to_thread(
        service.list_by_conversation, conversation_id, user_id, page=page, limit=limit
    )
    items: List[MessageResponse] = [
        _message_response(message, user_id) for message in result.messages
    ]
    return MessagesResponse(
        messages=items,
        total_count=result.total_count,
        page=result.page,
        limit=result.limit,
        has_more=result.has_more,
    )


@router.post("/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
    bus: DeliveryBus = Depends(get_delivery_bus),
) -> MarkReadResponse:
    read = await asyncio.to_thread(service.mark_read, conversation_id, user_id)
    await bus.publish_read_receipt(read)
    return MarkReadResponse(
        conversation_id=conversation_id,
        unread_count=0,
        messages_marked=read.messages_marked,
    )


@router.delete("/{conversation_id}/messages", response_model=ClearConversationResponse)
async def clear_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
    bus: DeliveryBus = Depends(get_delivery_bus),
) -> ClearConversationResponse:
    """Delete every message in the conversation for both participants."""
    cleared = await asyncio.to_thread(service.clear_conversation, conversation_id, user_id)
    await bus.publish_conversation_cleared(cleared)
    return ClearConversationResponse(
        conversation_id=conversation_id, deleted_messages=cleared.deleted_messages
    )
