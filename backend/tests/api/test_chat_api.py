import uuid

import pytest
from expects import be_empty, be_none, contain, equal, expect, have_len
from httpx import AsyncClient
from sqlalchemy import select

from forgechat.models.conversation import Message, MessageStatus

from tests.fakes import parse_sse

BASE = "/api/chat"


async def _create_conversation(client: AsyncClient, headers, title="Release prep") -> str:
    response = await client.post(f"{BASE}/conversations", json={"title": title}, headers=headers)
    expect(response.status_code).to(equal(201))
    return response.json()["data"]["id"]


async def _send(client: AsyncClient, headers, conversation_id, content="hi") -> dict:
    response = await client.post(
        f"{BASE}/conversations/{conversation_id}/messages", json={"content": content}, headers=headers
    )
    expect(response.status_code).to(equal(201))
    return response.json()["data"]


def _names(events):
    return [name for name, _ in events]


# --- Conversations ---

@pytest.mark.asyncio
async def test_requests_without_token_get_401_envelope(client: AsyncClient):
    response = await client.get(f"{BASE}/conversations")

    expect(response.status_code).to(equal(401))
    expect(response.json()).to(equal({
        "success": False, "errorCode": 40100, "message": "Missing authentication token", "data": None,
    }))


@pytest.mark.asyncio
async def test_conversation_crud(client: AsyncClient, auth_headers):
    response = await client.post(f"{BASE}/conversations", json={}, headers=auth_headers)
    expect(response.status_code).to(equal(201))
    conv = response.json()["data"]
    expect(conv["title"]).to(equal("New Conversation"))
    expect(conv["totalMessages"]).to(equal(0))

    response = await client.put(
        f"{BASE}/conversations/{conv['id']}", json={"title": "Renamed"}, headers=auth_headers
    )
    expect(response.json()["data"]["title"]).to(equal("Renamed"))

    response = await client.get(f"{BASE}/conversations/{conv['id']}", headers=auth_headers)
    expect(response.json()["data"]["title"]).to(equal("Renamed"))

    response = await client.delete(f"{BASE}/conversations/{conv['id']}", headers=auth_headers)
    expect(response.json()["success"]).to(equal(True))

    response = await client.get(f"{BASE}/conversations/{conv['id']}", headers=auth_headers)
    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40411))


@pytest.mark.asyncio
async def test_update_rejects_empty_title_and_unknown_conversation(client: AsyncClient, auth_headers):
    conversation_id = await _create_conversation(client, auth_headers)

    response = await client.put(f"{BASE}/conversations/{conversation_id}", json={"title": "  "}, headers=auth_headers)
    expect(response.status_code).to(equal(400))
    expect(response.json()["errorCode"]).to(equal(40013))

    response = await client.put(f"{BASE}/conversations/{uuid.uuid4()}", json={"title": "x"}, headers=auth_headers)
    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40415))


@pytest.mark.asyncio
async def test_list_is_paginated_and_ordered_by_activity(client: AsyncClient, auth_headers):
    ids = [await _create_conversation(client, auth_headers, title=f"c{i}") for i in range(3)]
    await _send(client, auth_headers, ids[0])

    response = await client.get(f"{BASE}/conversations?page=1&page_size=2", headers=auth_headers)

    body = response.json()["data"]
    expect(body["pagination"]).to(equal({"page": 1, "pageSize": 2, "total": 3, "totalPage": 2}))
    expect(body["data"]).to(have_len(2))
    expect(body["data"][0]["id"]).to(equal(ids[0]))

    response = await client.get(f"{BASE}/conversations?page_size=101", headers=auth_headers)
    expect(response.status_code).to(equal(400))
    expect(response.json()["errorCode"]).to(equal(40011))


# --- Messages ---

@pytest.mark.asyncio
async def test_messages_are_listed_in_creation_order(client: AsyncClient, auth_headers):
    conversation_id = await _create_conversation(client, auth_headers)
    first = await _send(client, auth_headers, conversation_id, "first")
    await _send(client, auth_headers, conversation_id, "second")

    response = await client.get(f"{BASE}/conversations/{conversation_id}/messages", headers=auth_headers)

    body = response.json()["data"]
    expect([m["content"] for m in body["data"]]).to(equal(["first", "second"]))
    expect(body["pagination"]["pageSize"]).to(equal(50))
    expect(first["senderType"]).to(equal("user"))

    response = await client.get(
        f"{BASE}/conversations/{conversation_id}/messages/{first['id']}", headers=auth_headers
    )
    expect(response.json()["data"]["content"]).to(equal("first"))

    response = await client.get(
        f"{BASE}/conversations/{conversation_id}/messages/{uuid.uuid4()}", headers=auth_headers
    )
    expect(response.json()["errorCode"]).to(equal(40416))


@pytest.mark.asyncio
async def test_empty_message_is_rejected(client: AsyncClient, auth_headers):
    conversation_id = await _create_conversation(client, auth_headers)

    response = await client.post(
        f"{BASE}/conversations/{conversation_id}/messages", json={"content": "   "}, headers=auth_headers
    )

    expect(response.status_code).to(equal(400))
    expect(response.json()["errorCode"]).to(equal(40012))


# --- Streaming ---

@pytest.mark.asyncio
async def test_stream_delivers_reply_as_sse(client: AsyncClient, auth_headers, fake_driver, session_factory):
    conversation_id = await _create_conversation(client, auth_headers)
    await _send(client, auth_headers, conversation_id, "hi")

    response = await client.get(f"{BASE}/conversations/{conversation_id}/stream", headers=auth_headers)

    expect(response.status_code).to(equal(200))
    expect(response.headers["content-type"]).to(equal("text/event-stream"))
    expect(response.headers["x-accel-buffering"]).to(equal("no"))
    events = parse_sse(response.text)
    expect(_names(events)).to(equal(
        ["message_start", "content_delta", "content_delta", "message_complete", "done"]
    ))
    expect(events[3][1]["content"]).to(equal("Hello there"))

    async with session_factory() as db:
        reply = (await db.execute(
            select(Message).where(Message.id == events[0][1]["messageId"])
        )).scalar_one()
    expect(reply.status).to(equal(MessageStatus.COMPLETED))

    response = await client.get(f"{BASE}/conversations/{conversation_id}/messages", headers=auth_headers)
    messages = response.json()["data"]["data"]
    expect([m["senderType"] for m in messages]).to(equal(["user", "assistant"]))


@pytest.mark.asyncio
async def test_stream_accepts_token_query_parameter(client: AsyncClient, auth_headers):
    conversation_id = await _create_conversation(client, auth_headers)
    await _send(client, auth_headers, conversation_id)
    token = auth_headers["Authorization"].split(" ", 1)[1]

    response = await client.get(f"{BASE}/conversations/{conversation_id}/stream?token={token}")

    expect(response.status_code).to(equal(200))
    expect(_names(parse_sse(response.text))[-1]).to(equal("done"))


@pytest.mark.asyncio
async def test_stream_titles_new_conversations(client: AsyncClient, auth_headers):
    response = await client.post(f"{BASE}/conversations", json={}, headers=auth_headers)
    conversation_id = response.json()["data"]["id"]
    await _send(client, auth_headers, conversation_id, "say hello")

    response = await client.get(f"{BASE}/conversations/{conversation_id}/stream", headers=auth_headers)

    events = parse_sse(response.text)
    expect(_names(events)).to(contain("conversation_title_updated"))
    response = await client.get(f"{BASE}/conversations/{conversation_id}", headers=auth_headers)
    expect(response.json()["data"]["title"]).to(equal("Friendly greeting"))


@pytest.mark.asyncio
async def test_stream_precondition_errors_use_envelopes(client: AsyncClient, auth_headers, session_factory):
    response = await client.get(f"{BASE}/conversations/{uuid.uuid4()}/stream", headers=auth_headers)
    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40413))

    conversation_id = await _create_conversation(client, auth_headers)
    response = await client.get(f"{BASE}/conversations/{conversation_id}/stream", headers=auth_headers)
    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40414))

    response = await client.get(
        f"{BASE}/conversations/{conversation_id}/stream?userMessageId=not-an-id", headers=auth_headers
    )
    expect(response.status_code).to(equal(400))
    expect(response.json()["errorCode"]).to(equal(40014))

    response = await client.get(
        f"{BASE}/conversations/{conversation_id}/stream?userMessageId={uuid.uuid4()}", headers=auth_headers
    )
    expect(response.status_code).to(equal(400))
    expect(response.json()["errorCode"]).to(equal(40014))

    async with session_factory() as db:
        replies = (await db.execute(select(Message).where(Message.conversation_id == conversation_id))).scalars().all()
    expect(replies).to(be_empty)


@pytest.mark.asyncio
async def test_stream_for_other_users_conversation_is_not_found(client: AsyncClient, auth_headers, db):
    from forgechat.core.security import create_access_token, hash_password
    from forgechat.models import User

    other = User(email="other@example.com", hashed_password=hash_password("another-pass"))
    db.add(other)
    await db.commit()
    conversation_id = await _create_conversation(client, auth_headers)
    await _send(client, auth_headers, conversation_id)

    response = await client.get(
        f"{BASE}/conversations/{conversation_id}/stream",
        headers={"Authorization": f"Bearer {create_access_token(other.id)}"},
    )

    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40413))


# --- Regenerate ---

@pytest.mark.asyncio
async def test_regenerate_streams_a_new_reply(client: AsyncClient, auth_headers, session_factory):
    conversation_id = await _create_conversation(client, auth_headers)
    user_msg = await _send(client, auth_headers, conversation_id, "hi")
    response = await client.get(f"{BASE}/conversations/{conversation_id}/stream", headers=auth_headers)
    first_reply_id = parse_sse(response.text)[0][1]["messageId"]

    response = await client.post(
        f"{BASE}/conversations/{conversation_id}/messages/{first_reply_id}/regenerate", headers=auth_headers
    )

    expect(response.status_code).to(equal(200))
    events = parse_sse(response.text)
    expect(_names(events)[-2:]).to(equal(["message_complete", "done"]))
    new_reply_id = events[0][1]["messageId"]
    expect(new_reply_id).not_to(equal(first_reply_id))

    async with session_factory() as db:
        reply = (await db.execute(select(Message).where(Message.id == new_reply_id))).scalar_one()
    expect(reply.parent_message_id).to(equal(user_msg["id"]))
    expect(reply.error_message).to(be_none)


@pytest.mark.asyncio
async def test_regenerate_requires_an_assistant_message(client: AsyncClient, auth_headers):
    conversation_id = await _create_conversation(client, auth_headers)
    user_msg = await _send(client, auth_headers, conversation_id)

    response = await client.post(
        f"{BASE}/conversations/{conversation_id}/messages/{user_msg['id']}/regenerate", headers=auth_headers
    )
    expect(response.status_code).to(equal(404))
    expect(response.json()["errorCode"]).to(equal(40418))

    response = await client.post(
        f"{BASE}/conversations/{uuid.uuid4()}/messages/{user_msg['id']}/regenerate", headers=auth_headers
    )
    expect(response.json()["errorCode"]).to(equal(40417))


# --- Health ---

@pytest.mark.asyncio
async def test_health_endpoints(client: AsyncClient, fake_driver):
    response = await client.get("/api/health")
    expect(response.json()).to(equal({"status": "ok"}))

    response = await client.get("/api/health/llm")
    expect(response.json()["data"]).to(equal({"status": "ok", "provider": "fake", "model": "fake-model"}))
