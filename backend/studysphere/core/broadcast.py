# backend/studysphere/core/broadcast.py
"""
Shared broadcast manager for cross-worker realtime fan-out.

Each worker keeps its own session registry. When Redis is configured, the
delivery bus publishes every realtime event to one channel and each
worker's relay task pushes it into its local registry.

- One Broadcaster instance per worker process
- Broadcaster internally maintains ONE Redis PubSub connection
- Without REDIS_URL nothing connects and delivery stays in-process
"""
import logging
from typing import Optional

from broadcaster import Broadcast

from .config import settings

logger = logging.getLogger(__name__)

# Single broadcast instance per worker process
_broadcast: Optional[Broadcast] = None


async def connect_broadcast(redis_url: Optional[str] = None) -> Optional[Broadcast]:
    """
    Connect to Redis via Broadcaster.

    Call during application startup (in lifespan manager). Returns None
    when no Redis URL is configured.
    """
    global _broadcast

    url = redis_url or settings.redis_url
    if not url:
        logger.info("[BROADCAST] REDIS_URL not set; realtime delivery stays in-process")
        return None

    _broadcast = Broadcast(url)
    await _broadcast.connect()
    logger.info("[BROADCAST] Connected to Redis for realtime fan-out: %s", url)
    return _broadcast


async def disconnect_broadcast() -> None:
    """
    Disconnect from Redis.

    Call during application shutdown.
    """
    global _broadcast

    if _broadcast is not None:
        await _broadcast.disconnect()
        _broadcast = None
        logger.info("[BROADCAST] Disconnected from Redis")
