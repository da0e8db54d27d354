# backend/tests/routes/test_conversations_routes.py
"""HTTP tests for the v1 conversation routes."""

from typing import Iterator

from fastapi import Request
from fastapi.testclient import TestClient
import pytest

from studysphere.database import get_db
from studysphere.main import create_app

BASE = "/api/v1/conversations"


@pytest.fixture
def app(db):
    app = create_app()

    @app.middleware("http")
    async def _fake_auth(request: Request, call_next):
        user_id = request.headers.get("X-User-Id")
        if user_id:
            request.state.user_id = user_id
        return await call_next(request)

    def _override_db() -> Iterator:
        yield db

    app.dependency_overrides[get_db] = _override_db
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def users(make_user):
    alice = make_user(first_name="Alice", last_name="Ng", email="alice@example.com")
    bob = make_user(first_name="Bob", last_name="Roy", email="bob@example.com")
    return alice, bob


def _as(user) -> dict:
    return {"X-User-Id": user.id}


def _send(client, sender, content, **target):
    return client.post(f"{BASE}/messages", json={"content": content, **target}, headers=_as(sender))


class TestAuthentication:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", BASE),
            ("get", f"{BASE}/unread-count"),
            ("get", f"{BASE}/stream"),
            ("get", f"{BASE}/abc"),
        ],
    )
    def test_requires_user(self, client, method: str, path: str) -> None:
        response = getattr(client, method)(path)

        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "NOT_AUTHENTICATED"
        assert body["status"] == 401
        assert body["title"] == "Unauthorized"


class TestStartAndList:
    def test_start_is_idempotent_per_pair(self, client, users) -> None:
        alice, bob = users

        first = client.post(BASE, json={"recipient_id": bob.id}, headers=_as(alice))
        second = client.post(BASE, json={"recipient_id": alice.id}, headers=_as(bob))

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert first.json()["conversation"]["id"] == second.json()["conversation"]["id"]
        assert first.json()["conversation"]["other_user"]["name"] == "Bob Roy"

    def test_start_with_self_is_rejected(self, client, users) -> None:
        alice, _ = users

        response = client.post(BASE, json={"recipient_id": alice.id}, headers=_as(alice))

        assert response.status_code == 400
        assert response.json()["code"] == "SELF_CONVERSATION"

    def test_unknown_recipient(self, client, users) -> None:
        alice, _ = users

        response = client.post(BASE, json={"recipient_id": "nobody"}, headers=_as(alice))

        assert response.status_code == 404
        assert response.json()["instance"] == BASE

    def test_list_shows_partner_and_unread(self, client, users) -> None:
        alice, bob = users
        _send(client, alice, "hello bob", recipient_id=bob.id)

        response = client.get(BASE, headers=_as(bob))

        assert response.status_code == 200
        conversations = response.json()["conversations"]
        assert len(conversations) == 1
        assert conversations[0]["other_user"]["id"] == alice.id
        assert conversations[0]["last_message"] == "hello bob"
        assert conversations[0]["unread_count"] == 1

    def test_unread_badge(self, client, users) -> None:
        alice, bob = users
        _send(client, alice, "one", recipient_id=bob.id)
        _send(client, alice, "two", recipient_id=bob.id)

        response = client.get(f"{BASE}/unread-count", headers=_as(bob))

        assert response.json() == {"unread_count": 2, "conversation_count": 1}


class TestMessages:
    def test_send_by_recipient_then_by_conversation(self, client, users) -> None:
        alice, bob = users

        first = _send(client, alice, "hi", recipient_id=bob.id)
        conversation_id = first.json()["conversation_id"]
        second = _send(client, bob, "hey", conversation_id=conversation_id)

        assert first.status_code == 200
        assert first.json()["message"]["is_from_me"] is True
        assert second.json()["conversation_id"] == conversation_id

        page = client.get(f"{BASE}/{conversation_id}/messages", headers=_as(alice)).json()
        assert [m["content"] for m in page["messages"]] == ["hi", "hey"]
        assert [m["is_from_me"] for m in page["messages"]] == [True, False]
        assert page["total_count"] == 2
        assert page["has_more"] is False

    def test_send_reaches_live_sessions(self, app, client, users) -> None:
        alice, bob = users
        registry = app.state.session_registry
        bob_session = registry.register(bob.id)
        alice_tab = registry.register(alice.id)

        _send(client, alice, "ping", recipient_id=bob.id)

        bob_events = [bob_session.queue.get_nowait() for _ in range(bob_session.queue.qsize())]
        assert [e["type"] for e in bob_events] == ["new_message", "unread_delta"]
        assert bob_events[0]["payload"]["message"]["content"] == "ping"
        assert alice_tab.queue.get_nowait()["type"] == "new_message"

    def test_client_message_id_deduplicates(self, app, client, users) -> None:
        alice, bob = users
        bob_session = app.state.session_registry.register(bob.id)

        first = _send(client, alice, "once", recipient_id=bob.id, client_message_id="c-1")
        again = _send(
            client,
            alice,
            "once",
            conversation_id=first.json()["conversation_id"],
            client_message_id="c-1",
        )

        assert first.json()["created"] is True
        assert again.json()["created"] is False
        assert again.json()["message"]["id"] == first.json()["message"]["id"]
        assert bob_session.queue.qsize() == 2

    def test_blank_content_rejected(self, client, users) -> None:
        alice, bob = users

        response = _send(client, alice, "   ", recipient_id=bob.id)

        assert response.status_code == 400
        assert response.json()["code"] == "EMPTY_MESSAGE"

    def test_outsider_cannot_send_or_read(self, client, users, make_user) -> None:
        alice, bob = users
        mallory = make_user(first_name="Mallory", last_name="X")
        conversation_id = _send(client, alice, "private", recipient_id=bob.id).json()[
            "conversation_id"
        ]

        send = _send(client, mallory, "let me in", conversation_id=conversation_id)
        read = client.get(f"{BASE}/{conversation_id}/messages", headers=_as(mallory))
        details = client.get(f"{BASE}/{conversation_id}", headers=_as(mallory))

        assert send.status_code == 400
        assert send.json()["code"] == "NOT_A_PARTICIPANT"
        assert read.status_code == 403
        assert details.status_code == 403

    def test_unknown_conversation(self, client, users) -> None:
        alice, _ = users

        response = client.get(f"{BASE}/missing/messages", headers=_as(alice))

        assert response.status_code == 404
        assert response.json()["code"] == "CONVERSATION_NOT_FOUND"

    def test_messages_paginate(self, client, users) -> None:
        alice, bob = users
        conversation_id = None
        for i in range(3):
            target = (
                {"conversation_id": conversation_id} if conversation_id else {"recipient_id": bob.id}
            )
            conversation_id = _send(client, alice, f"m{i}", **target).json()["conversation_id"]

        page = client.get(
            f"{BASE}/{conversation_id}/messages",
            params={"page": 1, "limit": 2},
            headers=_as(bob),
        ).json()

        assert [m["content"] for m in page["messages"]] == ["m0", "m1"]
        assert page["has_more"] is True


class TestReadAndClear:
    def test_mark_read_resets_and_notifies(self, app, client, users) -> None:
        alice, bob = users
        conversation_id = _send(client, alice, "hi", recipient_id=bob.id).json()["conversation_id"]
        alice_session = app.state.session_registry.register(alice.id)

        response = client.post(f"{BASE}/{conversation_id}/read", headers=_as(bob))
        again = client.post(f"{BASE}/{conversation_id}/read", headers=_as(bob))

        assert response.status_code == 200
        assert response.json()["unread_count"] == 0
        assert response.json()["messages_marked"] == 1
        assert again.json()["messages_marked"] == 0
        assert alice_session.queue.get_nowait()["type"] == "read_receipt"
        badge = client.get(f"{BASE}/unread-count", headers=_as(bob)).json()
        assert badge["unread_count"] == 0

    def test_clear_removes_messages_for_both(self, app, client, users) -> None:
        alice, bob = users
        conversation_id = _send(client, alice, "hi", recipient_id=bob.id).json()["conversation_id"]
        _send(client, bob, "hello", conversation_id=conversation_id)
        bob_session = app.state.session_registry.register(bob.id)

        response = client.delete(f"{BASE}/{conversation_id}/messages", headers=_as(alice))

        assert response.json() == {"conversation_id": conversation_id, "deleted_messages": 2}
        page = client.get(f"{BASE}/{conversation_id}/messages", headers=_as(bob)).json()
        assert page["messages"] == []
        details = client.get(f"{BASE}/{conversation_id}", headers=_as(bob)).json()
        assert details["last_message"] == ""
        assert details["unread_count"] == 0
        assert bob_session.queue.get_nowait()["type"] == "conversation_cleared"


def test_health_and_metrics(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/metrics").status_code == 200
