# backend/studysphere/services/messaging/session_registry.py
"""
Registry of live realtime sessions.

Maps a user id to the set of that user's open connections (one per tab or
device). Each connection owns a bounded queue that the delivery bus fills
and the SSE stream drains. The registry lives on the event loop and is
only touched from coroutines, so it needs no locking.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional, Set, Tuple

import ulid

from ...core.config import settings
from ...monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SessionConnection:
    """One live session for a user."""

    user_id: str
    queue: "asyncio.Queue[Dict[str, Any]]"
    session_id: str = field(default_factory=lambda: str(ulid.ULID()))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dropped_events: int = 0

    def __repr__(self) -> str:
        return f"<SessionConnection(user={self.user_id}, session={self.session_id})>"


class SessionRegistry:
    """user id -> live SessionConnections."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.session_queue_size
        self._sessions: Dict[str, Set[SessionConnection]] = {}

    def register(self, user_id: str) -> SessionConnection:
        connection = SessionConnection(
            user_id=user_id, queue=asyncio.Queue(maxsize=self.queue_size)
        )
        self._sessions.setdefault(user_id, set()).add(connection)
        logger.info(
            "[SESSIONS] Registered session %s for user %s",
            connection.session_id,
            user_id,
            extra={"user_id": user_id, "session_id": connection.session_id},
        )
        prometheus_metrics.set_active_sessions(self.connection_count)
        return connection

    def unregister(self, connection: SessionConnection) -> None:
        """Remove a connection. Unknown connections are ignored."""
        sessions = self._sessions.get(connection.user_id)
        if not sessions or connection not in sessions:
            return
        sessions.discard(connection)
        if not sessions:
            del self._sessions[connection.user_id]
        logger.info(
            "[SESSIONS] Unregistered session %s for user %s",
            connection.session_id,
            connection.user_id,
        )
        prometheus_metrics.set_active_sessions(self.connection_count)

    def connections_for(self, user_id: str) -> Tuple[SessionConnection, ...]:
        """Live connections of a user, oldest first."""
        sessions = self._sessions.get(user_id, set())
        return tuple(sorted(sessions, key=lambda conn: (conn.connected_at, conn.session_id)))

    def is_online(self, user_id: str) -> bool:
        return bool(self._sessions.get(user_id))

    @property
    def connection_count(self) -> int:
        return sum(len(sessions) for sessions in self._sessions.values())

    def stats(self) -> Dict[str, int]:
        return {
            "users": len(self._sessions),
            "connections": self.connection_count,
        }
