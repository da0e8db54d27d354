# backend/tests/unit/messaging/test_sse_stream.py
"""Tests for the per-session SSE generator."""

import asyncio
from datetime import datetime, timezone
import json

import pytest

from studysphere.services.messaging.events import (
    EventType,
    build_new_message_event,
    build_read_receipt_event,
    format_sse_event,
)
from studysphere.services.messaging.session_registry import SessionRegistry
from studysphere.services.messaging.sse_stream import create_sse_stream

USER = "01HAAAAAAAAAAAAAAAAAAAAAAA"
OTHER = "01HBBBBBBBBBBBBBBBBBBBBBBB"


def _new_message(sender_id: str) -> dict:
    return build_new_message_event(
        message_id="msg1",
        content="hello",
        sender_id=sender_id,
        conversation_id="conv1",
        recipient_ids=[OTHER if sender_id == USER else USER],
        created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )


class TestFormatSseEvent:
    def test_new_message_has_id_and_ownership(self) -> None:
        mine = format_sse_event(_new_message(USER), USER)
        theirs = format_sse_event(_new_message(OTHER), USER)

        assert mine["event"] == "new_message"
        assert mine["id"] == "msg1"
        assert json.loads(mine["data"])["is_mine"] is True
        assert json.loads(theirs["data"])["is_mine"] is False

    def test_other_events_pass_payload_through(self) -> None:
        formatted = format_sse_event(build_read_receipt_event("conv1", OTHER, 2), USER)

        assert formatted["event"] == EventType.READ_RECEIPT.value
        assert "id" not in formatted
        assert json.loads(formatted["data"])["messages_marked"] == 2


class TestCreateSseStream:
    @pytest.mark.asyncio
    async def test_connected_event_comes_first(self) -> None:
        registry = SessionRegistry()
        connection = registry.register(USER)
        stream = create_sse_stream(connection, registry, heartbeat_interval=5)

        first = await stream.__anext__()
        await stream.aclose()

        assert first["event"] == "connected"
        data = json.loads(first["data"])
        assert data["user_id"] == USER
        assert data["session_id"] == connection.session_id

    @pytest.mark.asyncio
    async def test_queued_event_is_streamed(self) -> None:
        registry = SessionRegistry()
        connection = registry.register(USER)
        stream = create_sse_stream(connection, registry, heartbeat_interval=5)
        await stream.__anext__()

        connection.queue.put_nowait(_new_message(OTHER))
        event = await asyncio.wait_for(stream.__anext__(), timeout=1)
        await stream.aclose()

        assert event["event"] == "new_message"
        assert event["id"] == "msg1"
        assert json.loads(event["data"])["message"]["content"] == "hello"

    @pytest.mark.asyncio
    async def test_idle_queue_sends_heartbeat(self) -> None:
        registry = SessionRegistry()
        connection = registry.register(USER)
        stream = create_sse_stream(connection, registry, heartbeat_interval=0.01)
        await stream.__anext__()

        event = await asyncio.wait_for(stream.__anext__(), timeout=1)
        await stream.aclose()

        assert event["event"] == "heartbeat"
        assert json.loads(event["data"])["type"] == "heartbeat"

    @pytest.mark.asyncio
    async def test_closing_stream_unregisters_session(self) -> None:
        registry = SessionRegistry()
        connection = registry.register(USER)
        other = registry.register(USER)
        stream = create_sse_stream(connection, registry, heartbeat_interval=5)
        await stream.__anext__()

        await stream.aclose()

        assert registry.connections_for(USER) == (other,)
