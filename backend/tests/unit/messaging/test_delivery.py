# backend/tests/unit/messaging/test_delivery.py
"""Tests for session registry fan-out and the delivery bus."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from studysphere.events.message_events import ConversationCleared, ConversationRead
from studysphere.events.publisher import EventPublisher
from studysphere.models import Conversation, Message
from studysphere.services.message_service import SentMessage
from studysphere.services.messaging.delivery import DeliveryBus, plan_deliveries
from studysphere.services.messaging.events import build_new_message_event
from studysphere.services.messaging.session_registry import SessionRegistry

ALICE = "01HAAAAAAAAAAAAAAAAAAAAAAA"
BOB = "01HBBBBBBBBBBBBBBBBBBBBBBB"


def _subscriptions(*sessions):
    """
    Stand-in for Broadcast.subscribe.

    Each call consumes the next session: an exception is raised on
    subscribe, a list of raw messages is yielded and then the stream ends.
    """
    remaining = list(sessions)

    @asynccontextmanager
    async def subscribe(channel: str):
        session = remaining.pop(0)
        if isinstance(session, Exception):
            raise session

        async def _events():
            for message in session:
                yield SimpleNamespace(message=message)

        yield _events()

    return subscribe


def _sent(created: bool = True, content: str = "hi bob") -> SentMessage:
    conversation = Conversation(id="conv1", participant_one_id=ALICE, participant_two_id=BOB)
    message = Message(
        id="msg1",
        conversation_id="conv1",
        sender_id=ALICE,
        content=content,
        created_at=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        client_message_id="client-1",
    )
    return SentMessage(
        message=message,
        conversation=conversation,
        recipient_ids=[BOB],
        created=created,
        unread_count={ALICE: 0, BOB: 4},
    )


def _drain(connection) -> list:
    events = []
    while not connection.queue.empty():
        events.append(connection.queue.get_nowait())
    return events


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(queue_size=4)


class TestSessionRegistry:
    def test_register_and_unregister(self, registry) -> None:
        first = registry.register(ALICE)
        second = registry.register(ALICE)

        assert registry.connections_for(ALICE) == (first, second)
        assert registry.stats() == {"users": 1, "connections": 2}

        registry.unregister(first)
        registry.unregister(first)
        assert registry.connections_for(ALICE) == (second,)

        registry.unregister(second)
        assert registry.is_online(ALICE) is False
        assert registry.stats() == {"users": 0, "connections": 0}

    def test_queue_is_bounded(self, registry) -> None:
        connection = registry.register(ALICE)

        assert connection.queue.maxsize == 4


class TestPlanDeliveries:
    def _event(self) -> dict:
        sent = _sent()
        return build_new_message_event(
            message_id="msg1",
            content="hi bob",
            sender_id=ALICE,
            conversation_id="conv1",
            recipient_ids=[BOB],
            created_at=sent.message.created_at,
            unread_count=sent.unread_count,
        )

    def test_sender_devices_get_message_only(self, registry) -> None:
        alice_phone = registry.register(ALICE)
        alice_laptop = registry.register(ALICE)

        deliveries = plan_deliveries(self._event(), [ALICE, BOB], ALICE, registry)

        assert {d.connection for d in deliveries} == {alice_phone, alice_laptop}
        assert {d.payload["type"] for d in deliveries} == {"new_message"}

    def test_recipient_gets_message_and_unread_delta(self, registry) -> None:
        bob = registry.register(BOB)

        deliveries = plan_deliveries(self._event(), [ALICE, BOB], ALICE, registry)

        assert [d.connection for d in deliveries] == [bob, bob]
        delta = deliveries[1].payload
        assert delta["type"] == "unread_delta"
        assert delta["payload"]["unread_count"] == 4
        assert delta["payload"]["user_id"] == BOB

    def test_offline_participants_get_nothing(self, registry) -> None:
        assert plan_deliveries(self._event(), [ALICE, BOB], ALICE, registry) == []


class TestDeliveryBus:
    @pytest.mark.asyncio
    async def test_publish_queues_for_every_session(self, registry) -> None:
        bus = DeliveryBus(registry)
        alice = registry.register(ALICE)
        bob = registry.register(BOB)

        queued = await bus.publish(_sent())

        assert queued == 3
        alice_events = _drain(alice)
        bob_events = _drain(bob)
        assert [e["type"] for e in alice_events] == ["new_message"]
        assert [e["type"] for e in bob_events] == ["new_message", "unread_delta"]
        message = bob_events[0]["payload"]["message"]
        assert message["id"] == "msg1"
        assert message["client_message_id"] == "client-1"

    @pytest.mark.asyncio
    async def test_replayed_send_is_not_redelivered(self, registry) -> None:
        subscriber = MagicMock()
        publisher = EventPublisher()
        publisher.subscribe(subscriber)
        bus = DeliveryBus(registry, event_publisher=publisher)
        bob = registry.register(BOB)

        assert await bus.publish(_sent(created=False)) == 0
        assert bob.queue.empty()
        subscriber.assert_not_called()

    @pytest.mark.asyncio
    async def test_full_queue_drops_for_that_session_only(self) -> None:
        registry = SessionRegistry(queue_size=1)
        bus = DeliveryBus(registry)
        slow = registry.register(BOB)
        fast = registry.register(ALICE)

        queued = await bus.publish(_sent())

        # Bob's queue holds one event; the unread_delta is dropped
        assert queued == 2
        assert slow.dropped_events == 1
        assert fast.dropped_events == 0
        assert slow.queue.get_nowait()["type"] == "new_message"

    @pytest.mark.asyncio
    async def test_subscribers_receive_message_sent(self, registry) -> None:
        received = []
        publisher = EventPublisher()
        publisher.subscribe(lambda event_type, payload: received.append((event_type, payload)))
        bus = DeliveryBus(registry, event_publisher=publisher)

        await bus.publish(_sent(content="x" * 200))

        assert len(received) == 1
        event_type, payload = received[0]
        assert event_type == "MessageSent"
        assert payload["recipient_ids"] == [BOB]
        assert payload["created_at"] == "2024-03-01T10:00:00+00:00"
        assert len(payload["preview"]) < 200

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_publish(self, registry) -> None:
        publisher = EventPublisher()
        publisher.subscribe(MagicMock(side_effect=RuntimeError("mailer down")))
        bus = DeliveryBus(registry, event_publisher=publisher)
        bob = registry.register(BOB)

        assert await bus.publish(_sent()) == 2
        assert bob.queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_read_receipt_reaches_both_participants(self, registry) -> None:
        bus = DeliveryBus(registry)
        alice = registry.register(ALICE)
        bob = registry.register(BOB)

        read = ConversationRead(
            conversation_id="conv1", reader_id=BOB, messages_marked=3, participant_ids=[ALICE, BOB]
        )
        assert await bus.publish_read_receipt(read) == 2

        for connection in (alice, bob):
            event = connection.queue.get_nowait()
            assert event["type"] == "read_receipt"
            assert event["payload"]["reader_id"] == BOB
            assert event["payload"]["unread_count"] == 0

    @pytest.mark.asyncio
    async def test_explicit_participants_override_event(self, registry) -> None:
        bus = DeliveryBus(registry)
        alice = registry.register(ALICE)
        registry.register(BOB)

        read = ConversationRead(conversation_id="conv1", reader_id=BOB, participant_ids=[])
        assert await bus.publish_read_receipt(read, participant_ids=[ALICE]) == 1
        assert alice.queue.get_nowait()["type"] == "read_receipt"

    @pytest.mark.asyncio
    async def test_cleared_fanout(self, registry) -> None:
        bus = DeliveryBus(registry)
        bob = registry.register(BOB)

        cleared = ConversationCleared(
            conversation_id="conv1", cleared_by=ALICE, participant_ids=[ALICE, BOB], deleted_messages=7
        )
        assert await bus.publish_conversation_cleared(cleared) == 1
        event = bob.queue.get_nowait()
        assert event["type"] == "conversation_cleared"
        assert event["payload"]["deleted_messages"] == 7

    @pytest.mark.asyncio
    async def test_conversation_lock_is_shared_per_conversation(self, registry) -> None:
        bus = DeliveryBus(registry)

        lock = bus.conversation_lock("conv1")

        assert bus.conversation_lock("conv1") is lock
        assert bus.conversation_lock("conv2") is not lock

    @pytest.mark.asyncio
    async def test_lock_serializes_concurrent_sends(self, registry) -> None:
        bus = DeliveryBus(registry)
        bob = registry.register(BOB)
        order = []

        async def send(label: str, delay: float) -> None:
            async with bus.conversation_lock("conv1"):
                order.append(f"{label}:start")
                await asyncio.sleep(delay)
                order.append(f"{label}:end")

        await asyncio.gather(send("first", 0.02), send("second", 0))

        assert order == ["first:start", "first:end", "second:start", "second:end"]
        assert bob.queue.empty()


class TestBroadcastRelay:
    @pytest.mark.asyncio
    async def test_publish_goes_to_channel(self, registry) -> None:
        broadcast = MagicMock()
        broadcast.publish = AsyncMock()
        bus = DeliveryBus(registry, broadcast=broadcast, channel="chat")
        bob = registry.register(BOB)

        assert await bus.publish(_sent()) == 0
        assert bob.queue.empty()

        broadcast.publish.assert_awaited_once()
        kwargs = broadcast.publish.await_args.kwargs
        assert kwargs["channel"] == "chat"
        envelope = json.loads(kwargs["message"])
        assert envelope["kind"] == "new_message"
        assert envelope["participants"] == [ALICE, BOB]

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_swallowed(self, registry) -> None:
        broadcast = MagicMock()
        broadcast.publish = AsyncMock(side_effect=ConnectionError("redis gone"))
        bus = DeliveryBus(registry, broadcast=broadcast)

        assert await bus.publish(_sent()) == 0

    @pytest.mark.asyncio
    async def test_relay_delivers_locally(self, registry) -> None:
        envelope = {
            "kind": "fanout",
            "user_ids": [ALICE],
            "event": {"type": "read_receipt", "payload": {"conversation_id": "conv1"}},
        }
        broadcast = MagicMock()

        @asynccontextmanager
        async def fake_subscribe(channel: str):
            class _Subscriber:
                def __init__(self):
                    self._events = [
                        SimpleNamespace(message="not json"),
                        SimpleNamespace(message=json.dumps(envelope)),
                    ]

                def __aiter__(self):
                    return self

                async def __anext__(self):
                    if not self._events:
                        raise StopAsyncIteration
                    return self._events.pop(0)

            yield _Subscriber()

        broadcast.subscribe = fake_subscribe
        bus = DeliveryBus(registry, broadcast=broadcast)
        alice = registry.register(ALICE)

        task = bus.start_relay()
        assert task is not None
        assert bus.start_relay() is task
        await asyncio.wait_for(task, timeout=1)
        await bus.stop_relay()

        assert alice.queue.get_nowait()["type"] == "read_receipt"

    @pytest.mark.asyncio
    async def test_malformed_envelopes_do_not_stop_relay(self, registry) -> None:
        good = {
            "kind": "fanout",
            "user_ids": [ALICE],
            "event": {"type": "read_receipt", "payload": {"conversation_id": "conv1"}},
        }
        broadcast = MagicMock()
        broadcast.subscribe = _subscriptions(
            [
                "[1, 2]",
                '"just a string"',
                json.dumps({"kind": "fanout", "user_ids": 5, "event": {}}),
                json.dumps(good),
            ]
        )
        bus = DeliveryBus(registry, broadcast=broadcast)
        alice = registry.register(ALICE)

        task = bus.start_relay()
        await asyncio.wait_for(task, timeout=1)

        assert task.exception() is None
        assert alice.queue.get_nowait()["type"] == "read_receipt"
        await bus.stop_relay()

    @pytest.mark.asyncio
    async def test_crashed_relay_is_restarted(self, registry) -> None:
        envelope = {
            "kind": "fanout",
            "user_ids": [ALICE],
            "event": {"type": "conversation_cleared", "payload": {"conversation_id": "conv1"}},
        }
        broadcast = MagicMock()
        broadcast.subscribe = _subscriptions(ConnectionError("redis gone"), [json.dumps(envelope)])
        bus = DeliveryBus(registry, broadcast=broadcast)
        bus.relay_restart_delay = 0
        alice = registry.register(ALICE)

        first = bus.start_relay()
        event = await asyncio.wait_for(alice.queue.get(), timeout=1)

        assert event["type"] == "conversation_cleared"
        assert first.done()
        assert bus._relay_task is not first
        await bus.stop_relay()

    @pytest.mark.asyncio
    async def test_stopped_relay_is_not_restarted(self, registry) -> None:
        broadcast = MagicMock()
        broadcast.subscribe = _subscriptions(ConnectionError("redis gone"), [])
        bus = DeliveryBus(registry, broadcast=broadcast)
        bus.relay_restart_delay = 60

        task = bus.start_relay()
        with pytest.raises(ConnectionError):
            await asyncio.wait_for(task, timeout=1)
        await asyncio.sleep(0)
        await bus.stop_relay()

        assert bus._relay_task is None
        assert bus._relay_restart is None

    @pytest.mark.asyncio
    async def test_unknown_envelope_is_ignored(self, registry) -> None:
        bus = DeliveryBus(registry)
        registry.register(ALICE)

        assert bus.dispatch({"kind": "mystery", "event": {}}) == 0

    @pytest.mark.asyncio
    async def test_no_broadcast_means_no_relay(self, registry) -> None:
        bus = DeliveryBus(registry)

        assert bus.start_relay() is None
        await bus.stop_relay()
