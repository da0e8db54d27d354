# backend/studysphere/services/messaging/delivery.py
"""
Realtime delivery bus.

Bridges stored messages to live sessions:

- ``plan_deliveries`` is a pure function from a new_message event and the
  registry to the (connection, payload) pairs that should be queued
- ``DeliveryBus`` queues those payloads, either directly or through the
  shared Broadcaster so every worker delivers to its own sessions

Delivery is best effort and at most once per session. A full session
queue drops the event for that session; the client reconciles on its next
list/messages fetch. Stored data never depends on delivery succeeding.
"""

import asyncio
from dataclasses import dataclass
import json
import logging
from typing import Any, Dict, List, Optional, Sequence
import weakref

from broadcaster import Broadcast

from ...core.config import settings
from ...events.message_events import ConversationCleared, ConversationRead, MessageSent
from ...events.publisher import EventPublisher
from ...monitoring.prometheus_metrics import prometheus_metrics
from ..message_service import SentMessage
from .events import (
    build_conversation_cleared_event,
    build_new_message_event,
    build_read_receipt_event,
    build_unread_delta_event,
)
from .session_registry import SessionConnection, SessionRegistry

logger = logging.getLogger(__name__)

ENVELOPE_NEW_MESSAGE = "new_message"
ENVELOPE_FANOUT = "fanout"


@dataclass(frozen=True)
class Delivery:
    connection: SessionConnection
    payload: Dict[str, Any]


def plan_deliveries(
    event_message: Dict[str, Any],
    participants: Sequence[str],
    sender_id: str,
    registry: SessionRegistry,
) -> List[Delivery]:
    """
    Decide which sessions receive what for one new message.

    Every live session of every participant gets the new_message event,
    the sender's other devices included. Sessions of participants other
    than the sender also get an unread_delta with their new count.
    """
    payload = event_message.get("payload", {})
    conversation_id = payload.get("conversation_id")
    unread_counts: Dict[str, int] = payload.get("unread_count") or {}

    deliveries: List[Delivery] = []
    seen = set()
    for participant_id in participants:
        if not participant_id or participant_id in seen:
            continue
        seen.add(participant_id)
        connections = registry.connections_for(participant_id)
        for connection in connections:
            deliveries.append(Delivery(connection, event_message))
        if participant_id == sender_id or not connections:
            continue
        delta_event = build_unread_delta_event(
            conversation_id=str(conversation_id),
            user_id=participant_id,
            unread_count=int(unread_counts.get(participant_id, 0)),
        )
        for connection in connections:
            deliveries.append(Delivery(connection, delta_event))
    return deliveries


class DeliveryBus:
    """
    Publishes realtime events to live sessions.

    With a Broadcaster, ``publish`` only sends to the channel; ``run_relay``
    (one task per worker) receives from the channel and delivers locally.
    Without one, events are delivered to this worker's registry directly.
    """

    # Seconds to wait before resubscribing after the relay crashes
    relay_restart_delay = 1.0

    def __init__(
        self,
        registry: SessionRegistry,
        broadcast: Optional[Broadcast] = None,
        channel: Optional[str] = None,
        event_publisher: Optional[EventPublisher] = None,
    ):
        self.registry = registry
        self.broadcast = broadcast
        self.channel = channel or settings.broadcast_channel
        self.event_publisher = event_publisher or EventPublisher()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._relay_task: Optional["asyncio.Task[None]"] = None
        self._relay_restart: Optional[asyncio.TimerHandle] = None

    def conversation_lock(self, conversation_id: str) -> asyncio.Lock:
        """
        Lock serializing persist-then-publish for one conversation.

        Holding it across both steps makes every session see a
        conversation's messages in append order.
        """
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Local delivery
    # ------------------------------------------------------------------

    def deliver(self, deliveries: Sequence[Delivery]) -> int:
        """Queue each payload without waiting. Returns how many were queued."""
        queued = 0
        for delivery in deliveries:
            event_type = str(delivery.payload.get("type", "unknown"))
            try:
                delivery.connection.queue.put_nowait(delivery.payload)
            except asyncio.QueueFull:
                delivery.connection.dropped_events += 1
                prometheus_metrics.record_realtime_delivery(event_type, delivered=False)
                logger.warning(
                    "[DELIVERY] Queue full; dropped %s for session %s",
                    event_type,
                    delivery.connection.session_id,
                    extra={
                        "user_id": delivery.connection.user_id,
                        "session_id": delivery.connection.session_id,
                        "event_type": event_type,
                    },
                )
                continue
            prometheus_metrics.record_realtime_delivery(event_type, delivered=True)
            queued += 1
        return queued

    def dispatch(self, envelope: Dict[str, Any]) -> int:
        """Deliver one envelope to this worker's sessions."""
        kind = envelope.get("kind")
        event = envelope.get("event") or {}
        if kind == ENVELOPE_NEW_MESSAGE:
            deliveries = plan_deliveries(
                event,
                envelope.get("participants") or [],
                str(envelope.get("sender_id") or ""),
                self.registry,
            )
        elif kind == ENVELOPE_FANOUT:
            deliveries = [
                Delivery(connection, event)
                for user_id in dict.fromkeys(envelope.get("user_ids") or [])
                for connection in self.registry.connections_for(user_id)
            ]
        else:
            logger.warning("[DELIVERY] Ignoring envelope of unknown kind %r", kind)
            return 0
        return self.deliver(deliveries)

    async def _emit(self, envelope: Dict[str, Any]) -> int:
        if self.broadcast is None:
            return self.dispatch(envelope)
        try:
            await self.broadcast.publish(channel=self.channel, message=json.dumps(envelope))
        except Exception as exc:
            # Realtime is best effort; the data is already committed
            logger.error("[BROADCAST] Failed to publish to %s: %s", self.channel, exc)
        return 0

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, sent: SentMessage) -> int:
        """
        Push a stored message to live sessions and notify subscribers.

        Returns the number of payloads queued locally (0 when relayed
        through the broadcaster). Replayed idempotent sends are not
        re-delivered.
        """
        if not sent.created:
            return 0

        message = sent.message
        event = build_new_message_event(
            message_id=message.id,
            content=message.content,
            sender_id=message.sender_id,
            conversation_id=message.conversation_id,
            recipient_ids=sent.recipient_ids,
            created_at=message.created_at,
            unread_count=sent.unread_count,
            client_message_id=message.client_message_id,
        )
        envelope = {
            "kind": ENVELOPE_NEW_MESSAGE,
            "participants": sent.participant_ids,
            "sender_id": message.sender_id,
            "event": event,
        }
        queued = await self._emit(envelope)

        self.event_publisher.publish(
            MessageSent(
                message_id=message.id,
                conversation_id=message.conversation_id,
                sender_id=message.sender_id,
                recipient_ids=list(sent.recipient_ids),
                created_at=message.created_at,
                preview=(message.content or "")[: settings.message_preview_length],
            )
        )
        logger.debug(
            "[DELIVERY] Published message %s",
            message.id,
            extra={"conversation_id": message.conversation_id, "queued": queued},
        )
        return queued

    async def publish_read_receipt(
        self, read: ConversationRead, participant_ids: Optional[List[str]] = None
    ) -> int:
        """Tell every participant's sessions that the reader caught up."""
        user_ids = participant_ids if participant_ids is not None else read.participant_ids
        event = build_read_receipt_event(
            conversation_id=read.conversation_id,
            reader_id=read.reader_id,
            messages_marked=read.messages_marked,
        )
        self.event_publisher.publish(read)
        return await self._emit(
            {"kind": ENVELOPE_FANOUT, "user_ids": user_ids, "event": event}
        )

    async def publish_conversation_cleared(self, cleared: ConversationCleared) -> int:
        event = build_conversation_cleared_event(
            conversation_id=cleared.conversation_id,
            cleared_by=cleared.cleared_by,
            deleted_messages=cleared.deleted_messages,
        )
        self.event_publisher.publish(cleared)
        return await self._emit(
            {"kind": ENVELOPE_FANOUT, "user_ids": cleared.participant_ids, "event": event}
        )

    # ------------------------------------------------------------------
    # Cross-worker relay
    # ------------------------------------------------------------------

    async def run_relay(self) -> None:
        """Receive envelopes from the broadcast channel and deliver locally."""
        if self.broadcast is None:
            return
        async with self.broadcast.subscribe(channel=self.channel) as subscriber:
            logger.info("[BROADCAST] Relay subscribed to %s", self.channel)
            async for event in subscriber:
                try:
                    envelope = json.loads(event.message)
                except (TypeError, json.JSONDecodeError) as exc:
                    logger.warning("[BROADCAST] Invalid JSON on %s: %s", self.channel, exc)
                    continue
                if not isinstance(envelope, dict):
                    logger.warning(
                        "[BROADCAST] Ignoring non-object envelope on %s: %r",
                        self.channel,
                        type(envelope).__name__,
                    )
                    continue
                try:
                    self.dispatch(envelope)
                except Exception:
                    logger.exception(
                        "[BROADCAST] Failed to dispatch envelope from %s", self.channel
                    )

    def start_relay(self) -> Optional["asyncio.Task[None]"]:
        if self.broadcast is None or self._relay_task is not None:
            return self._relay_task
        task = asyncio.create_task(self.run_relay())
        task.add_done_callback(self._on_relay_done)
        self._relay_task = task
        return task

    def _on_relay_done(self, task: "asyncio.Task[None]") -> None:
        """Restart the relay after it crashed; a cancelled or stopped relay stays down."""
        if task.cancelled() or self._relay_task is not task:
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "[BROADCAST] Relay on %s crashed; restarting in %.1fs",
            self.channel,
            self.relay_restart_delay,
            exc_info=exc,
        )
        prometheus_metrics.record_relay_restart()
        self._relay_task = None
        self._relay_restart = asyncio.get_running_loop().call_later(
            self.relay_restart_delay, self._restart_relay
        )

    def _restart_relay(self) -> None:
        self._relay_restart = None
        self.start_relay()

    async def stop_relay(self) -> None:
        if self._relay_restart is not None:
            self._relay_restart.cancel()
            self._relay_restart = None
        task, self._relay_task = self._relay_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("[BROADCAST] Relay stopped")
