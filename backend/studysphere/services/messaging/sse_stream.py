# backend/studysphere/services/messaging/sse_stream.py
"""
SSE stream for one registered realtime session.

The delivery bus fills the session's queue; this generator drains it and
sends a heartbeat whenever the queue stays empty for a full interval.
There is no replay buffer: a reconnecting client registers a new session
and re-fetches conversations and messages.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import AsyncGenerator, Dict, Optional

from ...core.config import settings
from .events import format_sse_event
from .session_registry import SessionConnection, SessionRegistry

logger = logging.getLogger(__name__)


def _heartbeat() -> Dict[str, str]:
    return {
        "event": "heartbeat",
        "data": json.dumps(
            {
                "type": "heartbeat",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ),
    }


async def create_sse_stream(
    connection: SessionConnection,
    registry: SessionRegistry,
    heartbeat_interval: Optional[float] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Stream queued events for a session.

    Yields:
        SSE event dicts with keys: event, data, id (new_message only)
    """
    interval = heartbeat_interval or settings.sse_heartbeat_interval
    user_id = connection.user_id

    try:
        yield {
            "event": "connected",
            "data": json.dumps(
                {
                    "user_id": user_id,
                    "session_id": connection.session_id,
                    "status": "connected",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            ),
        }

        while True:
            try:
                event = await asyncio.wait_for(connection.queue.get(), timeout=interval)
            except asyncio.TimeoutError:
                logger.debug("[SSE-HEARTBEAT] Sending heartbeat for user %s", user_id)
                yield _heartbeat()
                continue

            logger.debug(
                "[SSE-STREAM] Yielding event",
                extra={"user_id": user_id, "event_type": event.get("type")},
            )
            yield format_sse_event(event, user_id)
    except asyncio.CancelledError:
        logger.info("[SSE-STREAM] Stream cancelled for user %s", user_id)
        raise
    finally:
        registry.unregister(connection)
        logger.info(
            "[SSE-STREAM] Session %s for user %s closed", connection.session_id, user_id
        )
