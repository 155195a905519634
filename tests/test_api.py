import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeFactory, FakeProvider
from branchchat.providers import ProviderName
from main import create_app

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture
def client(settings, store, scheduler):
    factory = FakeFactory(
        FakeProvider(ProviderName.OPENAI),
        FakeProvider(ProviderName.ANTHROPIC, attempts=[["from claude"]]),
    )
    app = create_app(settings, store=store, factory_builder=lambda user_id: factory, scheduler=scheduler)
    with TestClient(app) as client:
        yield client
    assert not scheduler.running


def finished(client, message_id, headers=ALICE):
    for _ in range(200):
        message = client.get(f"/api/messages/{message_id}", headers=headers).json()
        if not message["is_streaming"]:
            return message
        time.sleep(0.01)
    raise AssertionError(f"message {message_id} still streaming")


def new_chat(client, **body):
    response = client.post("/api/chats", json=body, headers=ALICE)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_missing_user_header(client):
    response = client.get("/api/chats")

    assert response.status_code == 401
    assert response.json()["error"] == "NotAuthenticated"


def test_send_and_read_transcript(client, scheduler):
    chat = new_chat(client)

    sent = client.post(f"/api/chats/{chat['id']}/messages", json={"content": "hi"}, headers=ALICE)
    assert sent.status_code == 202
    assistant = finished(client, sent.json()["assistant_message_id"])
    assert assistant["content"] == "Hello world"

    body = client.get(f"/api/chats/{chat['id']}", headers=ALICE).json()
    assert [m["content"] for m in body["messages"]] == ["hi", "Hello world"]
    assert body["chat"]["model"] == "gpt-4o-mini"
    assert [job[0] for job in scheduler.jobs] == [chat["id"]]

    listed = client.get("/api/chats", headers=ALICE).json()["chats"]
    assert [c["id"] for c in listed] == [chat["id"]]


def test_other_users_are_rejected(client):
    chat = new_chat(client)

    response = client.get(f"/api/chats/{chat['id']}", headers=BOB)

    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized"
    assert client.get("/api/chats/missing", headers=ALICE).status_code == 404


def test_unknown_model(client):
    response = client.post("/api/chats", json={"model": "mystery-model"}, headers=ALICE)

    assert response.status_code == 422
    assert response.json() == {
        "detail": "Unable to determine provider for model: mystery-model",
        "error": "UnknownProvider",
    }


def test_media_model_is_not_a_chat_model(client):
    chat = new_chat(client)

    response = client.post(
        f"/api/chats/{chat['id']}/messages",
        json={"content": "hi", "model": "veo-3.0-generate-001"},
        headers=ALICE,
    )

    assert response.status_code == 422
    assert response.json() == {
        "detail": "veo-3.0-generate-001 is a media generation model and cannot be used for chat",
        "error": "InvalidOperation",
    }


def test_multi_model_needs_two_models(client):
    chat = new_chat(client)

    response = client.post(
        f"/api/chats/{chat['id']}/messages/multi",
        json={"content": "hi", "models": ["gpt-4o"]},
        headers=ALICE,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "InvalidModelCount"


def test_multi_model_primary_switch(client):
    chat = new_chat(client)
    sent = client.post(
        f"/api/chats/{chat['id']}/messages/multi",
        json={"content": "hi", "models": ["gpt-4o", "claude-3-5-sonnet"]},
        headers=ALICE,
    ).json()
    message = finished(client, sent["assistant_message_id"])
    claude = message["metadata"]["multi_ai"]["responses"][1]["response_id"]

    response = client.post(
        f"/api/messages/{message['id']}/responses/primary",
        json={"response_id": claude},
        headers=ALICE,
    )

    assert response.status_code == 200
    assert response.json()["content"] == "from claude"


def test_edit_and_switch_branches(client):
    chat = new_chat(client)
    sent = client.post(f"/api/chats/{chat['id']}/messages", json={"content": "one"}, headers=ALICE).json()
    finished(client, sent["assistant_message_id"])

    edit = client.post(
        f"/api/messages/{sent['user_message_id']}/edit",
        json={"content": "uno"},
        headers=ALICE,
    ).json()
    finished(client, edit["assistant_message_id"])

    branches = client.get(f"/api/chats/{chat['id']}/branches", headers=ALICE).json()
    assert branches["active_branch_id"] == edit["branch_id"]
    assert len(branches["branches"]) == 2

    view = client.get(f"/api/messages/{sent['user_message_id']}/branches", headers=ALICE).json()["view"]
    assert view["total"] == 2

    main = next(b for b in branches["branches"] if b["is_main"])
    switched = client.post(
        f"/api/chats/{chat['id']}/branches/switch",
        json={"branch_id": main["id"]},
        headers=ALICE,
    )
    assert switched.json()["active_branch_id"] == main["id"]
    messages = client.get(f"/api/chats/{chat['id']}", headers=ALICE).json()["messages"]
    assert [m["content"] for m in messages] == ["one", "Hello world"]


def test_retry_and_delete(client):
    chat = new_chat(client)
    sent = client.post(f"/api/chats/{chat['id']}/messages", json={"content": "one"}, headers=ALICE).json()
    finished(client, sent["assistant_message_id"])

    retry = client.post(f"/api/messages/{sent['assistant_message_id']}/retry", headers=ALICE)
    assert retry.status_code == 202
    message = finished(client, sent["assistant_message_id"])
    assert len(message["message_versions"]) == 2

    deleted = client.delete(f"/api/messages/{sent['user_message_id']}?mode=from_here", headers=ALICE)
    assert deleted.json() == {"deleted_count": 2, "from_index": 0, "mode": "from_here"}
    assert client.get(f"/api/chats/{chat['id']}", headers=ALICE).json()["messages"] == []


def test_rename_settings_and_delete_chat(client):
    chat = new_chat(client)

    renamed = client.patch(f"/api/chats/{chat['id']}", json={"title": "Monads"}, headers=ALICE)
    assert renamed.json()["title"] == "Monads"

    updated = client.put(f"/api/chats/{chat['id']}/settings", json={"temperature": 0.5}, headers=ALICE)
    assert updated.json()["ai_settings"]["temperature"] == 0.5

    assert client.delete(f"/api/chats/{chat['id']}", headers=ALICE).status_code == 204
    assert client.get(f"/api/chats/{chat['id']}", headers=ALICE).status_code == 404


def test_stop_and_recover(client):
    chat = new_chat(client)
    sent = client.post(f"/api/chats/{chat['id']}/messages", json={"content": "hi"}, headers=ALICE).json()

    assert client.post(f"/api/messages/{sent['assistant_message_id']}/stop", headers=ALICE).status_code == 204
    finished(client, sent["assistant_message_id"])
    assert client.post("/api/chats/recover", headers=ALICE).json() == {"restarted": 0}
