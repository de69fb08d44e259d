import asyncpg
import pytest
from fastapi.middleware.cors import CORSMiddleware

from chatcore.infra.auth import AuthenticatedUser
from chatcore.main import app
from chatcore.settings import settings


async def _create(api_client, headers, participants, kind="private", **extra):
    body = {"participantIds": participants, "kind": kind, **extra}
    return await api_client.post("/conversations", json=body, headers=headers)


@pytest.mark.asyncio
async def test_requests_without_credentials_are_unauthenticated(api_client):
    response = await api_client.get("/conversations")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    body = response.json()
    assert body["kind"] == "unauthenticated"
    assert body["message"] == "invalid_token"


@pytest.mark.asyncio
async def test_invalid_token_is_unauthenticated(api_client):
    response = await api_client.get("/conversations", headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"


@pytest.mark.asyncio
async def test_user_id_header_only_works_in_development(api_client):
    response = await api_client.get("/conversations", headers={"X-User-Id": "alice"})
    assert response.status_code == 401

    settings.environment = "dev"
    response = await api_client.get("/conversations", headers={"X-User-Id": "alice"})
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_private_conversation_is_reused_for_the_same_pair(api_client, auth_headers):
    first = await _create(api_client, auth_headers("alice"), ["bob"])
    second = await _create(api_client, auth_headers("bob"), ["alice"])

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    participants = [p["id"] for p in first.json()["participants"]]
    assert participants == ["alice", "bob"]
    assert first.json()["participants"][1]["displayName"] == "Bob"


@pytest.mark.asyncio
async def test_group_conversations_are_distinct(api_client, auth_headers):
    first = await _create(api_client, auth_headers("alice"), ["bob", "carol"], "group", displayName="Study")
    second = await _create(api_client, auth_headers("alice"), ["bob", "carol"], "group", displayName="Study")

    assert first.status_code == second.status_code == 201
    assert first.json()["id"] != second.json()["id"]
    assert first.json()["displayName"] == "Study"


@pytest.mark.asyncio
async def test_create_rejects_unknown_participants(api_client, auth_headers):
    response = await _create(api_client, auth_headers("alice"), ["mallory"])

    assert response.status_code == 400
    assert response.json() == {
        "kind": "invalid_argument",
        "message": "unknown_participants",
        "request_id": response.headers["X-Request-Id"],
    }


@pytest.mark.asyncio
async def test_create_validates_the_body(api_client, auth_headers):
    response = await api_client.post("/conversations", json={"kind": "group"}, headers=auth_headers("alice"))

    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "invalid_argument"
    assert body["errors"]


@pytest.mark.asyncio
async def test_list_is_ordered_by_activity(api_client, auth_headers):
    headers = auth_headers("alice")
    quiet = (await _create(api_client, headers, ["carol"])).json()
    busy = (await _create(api_client, headers, ["bob"])).json()
    await api_client.post(f"/conversations/{quiet['id']}/messages", json={"content": "wake up"}, headers=headers)

    response = await api_client.get("/conversations", headers=headers)

    assert response.status_code == 200
    listed = response.json()
    assert [c["id"] for c in listed] == [quiet["id"], busy["id"]]
    assert listed[0]["lastMessage"]["content"] == "wake up"
    assert listed[1]["lastMessage"] is None


@pytest.mark.asyncio
async def test_send_and_read_history(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()
    url = f"/conversations/{conversation['id']}/messages"

    sent = await api_client.post(
        url,
        json={
            "content": "  hi bob ",
            "attachments": [{"url": "https://cdn.example/p.png", "mimeType": "image/png", "sizeBytes": 10}],
        },
        headers=auth_headers("alice"),
    )
    assert sent.status_code == 201
    message = sent.json()
    assert message["sequence"] == 1
    assert message["content"] == "hi bob"
    assert message["sender"] == "alice"
    assert message["attachments"][0]["kind"] == "image"
    assert set(message["readBy"]) == {"alice"}

    history = await api_client.get(url, headers=auth_headers("bob"))
    assert history.status_code == 200
    body = history.json()
    assert [m["id"] for m in body["messages"]] == [message["id"]]
    assert body["pagination"] == {"page": 1, "pageSize": 50, "total": 1, "hasMore": False}


@pytest.mark.asyncio
async def test_history_second_page_of_exactly_one_page_is_empty(api_client, auth_headers, chat):
    conversation, _ = await chat.directory.create_conversation("alice", ["bob"], "private")
    for index in range(50):
        await chat.store.append(conversation.id, "alice", f"m{index}")

    url = f"/conversations/{conversation.id}/messages"
    first = await api_client.get(url, params={"page": 1, "pageSize": 50}, headers=auth_headers("bob"))
    second = await api_client.get(url, params={"page": 2, "pageSize": 50}, headers=auth_headers("bob"))

    assert len(first.json()["messages"]) == 50
    assert first.json()["messages"][0]["sequence"] == 50
    assert second.status_code == 200
    assert second.json()["messages"] == []
    assert second.json()["pagination"]["hasMore"] is False


@pytest.mark.asyncio
async def test_history_rejects_bad_pagination(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()

    response = await api_client.get(
        f"/conversations/{conversation['id']}/messages", params={"page": 0}, headers=auth_headers("alice")
    )

    assert response.status_code == 400
    assert response.json()["kind"] == "invalid_argument"


@pytest.mark.asyncio
async def test_non_members_see_not_found(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()
    cid = conversation["id"]
    carol = auth_headers("carol")

    for response in (
        await api_client.get(f"/conversations/{cid}", headers=carol),
        await api_client.get(f"/conversations/{cid}/messages", headers=carol),
        await api_client.post(f"/conversations/{cid}/messages", json={"content": "hi"}, headers=carol),
        await api_client.get("/conversations/does-not-exist", headers=carol),
    ):
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"


@pytest.mark.asyncio
async def test_non_members_see_forbidden_without_concealment(api_client, auth_headers):
    settings.conceal_membership = False
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()

    response = await api_client.get(f"/conversations/{conversation['id']}/messages", headers=auth_headers("carol"))

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"


@pytest.mark.asyncio
async def test_blank_content_is_rejected(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()

    response = await api_client.post(
        f"/conversations/{conversation['id']}/messages", json={"content": " \n\t"}, headers=auth_headers("alice")
    )

    assert response.status_code == 400
    assert response.json()["message"] == "content_required"


@pytest.mark.asyncio
async def test_idempotency_key_replays_the_first_message(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()
    url = f"/conversations/{conversation['id']}/messages"
    headers = {**auth_headers("alice"), "Idempotency-Key": "send-1"}

    first = await api_client.post(url, json={"content": "once"}, headers=headers)
    again = await api_client.post(url, json={"content": "once"}, headers=headers)
    reused = await api_client.post(url, json={"content": "different"}, headers=headers)

    assert first.status_code == 201
    assert first.headers["Idempotency-Key"] == "send-1"
    assert again.status_code == 200
    assert again.json()["id"] == first.json()["id"]
    assert reused.status_code == 409
    assert reused.json()["kind"] == "conflict"

    history = await api_client.get(url, headers=auth_headers("alice"))
    assert history.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_private_send_creates_the_conversation_lazily(api_client, auth_headers):
    response = await api_client.post(
        "/conversations/private/bob/messages", json={"content": "first contact"}, headers=auth_headers("alice")
    )
    assert response.status_code == 201
    conversation_id = response.json()["conversationId"]

    again = await api_client.post(
        "/conversations/private/alice/messages", json={"content": "reply"}, headers=auth_headers("bob")
    )
    assert again.json()["conversationId"] == conversation_id
    assert again.json()["sequence"] == 2

    detail = await api_client.get(f"/conversations/{conversation_id}", headers=auth_headers("bob"))
    assert detail.status_code == 200
    assert detail.json()["kind"] == "private"


@pytest.mark.asyncio
async def test_private_send_to_self_is_rejected(api_client, auth_headers):
    response = await api_client.post(
        "/conversations/private/alice/messages", json={"content": "me"}, headers=auth_headers("alice")
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_mark_read_is_idempotent(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()
    url = f"/conversations/{conversation['id']}"
    for text in ("one", "two", "three"):
        await api_client.post(f"{url}/messages", json={"content": text}, headers=auth_headers("alice"))

    first = await api_client.post(f"{url}/read", json={"upToSequence": 2}, headers=auth_headers("bob"))
    again = await api_client.post(f"{url}/read", json={"upToSequence": 2}, headers=auth_headers("bob"))

    assert first.status_code == 200
    assert first.json()["marked"] == 2
    assert again.json()["marked"] == 0
    history = (await api_client.get(f"{url}/messages", headers=auth_headers("bob"))).json()
    read_by_bob = {m["sequence"]: "bob" in m["readBy"] for m in history["messages"]}
    assert read_by_bob == {3: False, 2: True, 1: True}


@pytest.mark.asyncio
async def test_http_send_reaches_live_subscribers(api_client, auth_headers, chat):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()
    received = []

    async def emit(event, payload, *, to):
        received.append((to, event, payload))

    chat.broadcaster.bind(emit)
    chat.broadcaster.register("sid-bob", AuthenticatedUser(id="bob"))
    await chat.broadcaster.join("sid-bob", conversation["id"])

    sent = await api_client.post(
        f"/conversations/{conversation['id']}/messages", json={"content": "over http"}, headers=auth_headers("alice")
    )
    await chat.broadcaster.wait_idle()

    assert [(to, event) for to, event, _ in received] == [("sid-bob", "message-received")]
    assert received[0][2]["message"]["id"] == sent.json()["id"]


@pytest.mark.asyncio
async def test_malformed_idempotency_key_is_rejected(api_client, auth_headers):
    conversation = (await _create(api_client, auth_headers("alice"), ["bob"])).json()

    response = await api_client.post(
        f"/conversations/{conversation['id']}/messages",
        json={"content": "hi"},
        headers={**auth_headers("alice"), "Idempotency-Key": "x" * 200, "Origin": "http://app.test"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "invalid_idempotency_key"
    assert response.headers["X-Request-Id"] == response.json()["request_id"]
    assert response.headers["Access-Control-Allow-Origin"] == "http://app.test"
    assert "X-Request-Id" in response.headers["Access-Control-Expose-Headers"]


def test_cors_is_the_outermost_middleware():
    assert app.user_middleware[0].cls is CORSMiddleware


@pytest.mark.asyncio
async def test_storage_failures_render_as_unavailable(api_client, auth_headers, monkeypatch):
    class BrokenPool:
        def __getattr__(self, name):
            async def _fail(*args, **kwargs):
                raise asyncpg.InterfaceError("connection lost")

            return _fail

    async def _get_pool():
        return BrokenPool()

    monkeypatch.setattr("chatcore.domain.chat.repository.get_pool", _get_pool)

    response = await api_client.get("/conversations", headers={**auth_headers("alice"), "X-Request-Id": "req-503"})

    assert response.status_code == 503
    body = response.json()
    assert body["kind"] == "unavailable"
    assert body["message"] == "storage_unavailable"
    assert body["request_id"] == "req-503"
