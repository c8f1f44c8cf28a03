"""Test suite for History API repositories."""

import json

import httpx
import pytest

from inbox_sync.domain.errors import LoadError
from inbox_sync.domain.models import Participant
from inbox_sync.repositories.http import HttpHistoryRepository
from inbox_sync.repositories.memory import InMemoryHistoryRepository
from inbox_sync.services.identity import StaticIdentityProvider

from helpers import JOHN, MARY, VIEWER, at, make_message


def wire_conversation(cid, other_id, updated_at="2024-03-05T09:00:00Z", **extra):
    data = {
        "_id": cid,
        "participants": [{"_id": "me", "username": "jdoe"}, {"_id": other_id, "username": other_id}],
        "unreadCount": 0,
        "updatedAt": updated_at,
    }
    data.update(extra)
    return data


def build_http(handler, token="secret"):
    identity = StaticIdentityProvider(VIEWER.id, token)
    return HttpHistoryRepository(
        "http://api.test/api/", identity, transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_list_sends_bearer_token_and_paging():
    """Test the token and paging parameters reach the server."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[wire_conversation("c1", "u2")])

    repo = build_http(handler)
    conversations = await repo.list_conversations(page=1, limit=20)
    await repo.close()

    assert [c.id for c in conversations] == ["c1"]
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.url.path == "/api/conversations"
    assert request.url.params["limit"] == "20"


@pytest.mark.asyncio
async def test_list_accepts_wrapped_body_and_skips_malformed():
    """Test one bad entry does not sink the whole page."""
    body = {"conversations": [
        wire_conversation("c1", "u2"),
        {"_id": "broken"},
        wire_conversation("c3", "u3", relatedProductId="p1", relatedJobId="j1"),
        wire_conversation("c4", "u4"),
    ]}
    repo = build_http(lambda request: httpx.Response(200, json=body))

    conversations = await repo.list_conversations()

    assert [c.id for c in conversations] == ["c1", "c4"]


@pytest.mark.asyncio
async def test_rejected_token_is_an_auth_load_error():
    """Test 401 surfaces as a LoadError flagged as auth."""
    repo = build_http(lambda request: httpx.Response(401, json={"message": "jwt expired"}))

    with pytest.raises(LoadError) as exc_info:
        await repo.list_conversations()

    assert exc_info.value.status_code == 401
    assert exc_info.value.is_auth_error


@pytest.mark.asyncio
async def test_transport_failures_become_load_errors():
    """Test network errors, server errors and bad bodies all raise LoadError."""
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LoadError) as exc_info:
        await build_http(unreachable).list_conversations()
    assert exc_info.value.status_code is None

    with pytest.raises(LoadError) as exc_info:
        await build_http(lambda r: httpx.Response(503)).list_conversations()
    assert exc_info.value.status_code == 503
    assert not exc_info.value.is_auth_error

    with pytest.raises(LoadError):
        await build_http(lambda r: httpx.Response(200, text="<html>")).list_conversations()

    with pytest.raises(LoadError):
        await build_http(lambda r: httpx.Response(200, json={"conversations": "nope"})).list_conversations()


@pytest.mark.asyncio
async def test_signed_out_viewer_cannot_load():
    """Test no request is made without a token."""
    calls = []
    repo = build_http(lambda r: calls.append(r) or httpx.Response(200, json=[]), token=None)

    with pytest.raises(LoadError) as exc_info:
        await repo.list_conversations()

    assert exc_info.value.is_auth_error
    assert calls == []


@pytest.mark.asyncio
async def test_create_conversation_payload():
    """Test the create request body and response parsing."""
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(201, json=wire_conversation("c9", "u3", relatedJobId="j1"))

    repo = build_http(handler)
    conversation = await repo.create_conversation("u3", job_id="j1")

    assert seen == [{"recipientId": "u3", "jobId": "j1"}]
    assert conversation.related_entity == ("job", "j1")

    with pytest.raises(ValueError):
        await repo.create_conversation("u3", product_id="p1", job_id="j1")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_get_messages():
    """Test message pages parse, and malformed pages raise."""
    messages = [
        {"_id": "m1", "conversationId": "c1", "senderId": "u2", "content": "hi",
         "createdAt": "2024-03-05T09:00:00Z"},
        {"_id": "m2", "conversationId": "c1", "senderId": "me", "messageType": "image",
         "createdAt": "2024-03-05T09:01:00Z"},
    ]
    repo = build_http(lambda r: httpx.Response(200, json={"messages": messages}))
    assert [m.id for m in await repo.get_messages("c1")] == ["m1", "m2"]

    repo = build_http(lambda r: httpx.Response(200, json=[{"_id": "m1"}]))
    with pytest.raises(LoadError):
        await repo.get_messages("c1")


@pytest.mark.asyncio
async def test_memory_repository_orders_and_pages():
    """Test server-side ordering by activity and page offsets."""
    repo = InMemoryHistoryRepository(VIEWER)
    repo.add_user(MARY)
    repo.add_user(JOHN)
    with_mary = await repo.create_conversation(MARY.id)
    with_john = await repo.create_conversation(JOHN.id)

    await repo.add_message(make_message(with_mary.id, MARY.id, at(5)))
    await repo.add_message(make_message(with_john.id, JOHN.id, at(1)))

    first = await repo.list_conversations(page=1, limit=1)
    second = await repo.list_conversations(page=2, limit=1)
    assert [c.id for c in first] == [with_mary.id]
    assert [c.id for c in second] == [with_john.id]

    await repo.add_message(make_message(with_john.id, JOHN.id, at(9)))
    conversations = await repo.list_conversations()
    assert [c.id for c in conversations] == [with_john.id, with_mary.id]
    assert conversations[0].unread_count == 2


@pytest.mark.asyncio
async def test_memory_repository_create_or_get():
    """Test the same pair and link reuse one conversation."""
    repo = InMemoryHistoryRepository(VIEWER)
    repo.add_user(MARY)

    first = await repo.create_conversation(MARY.id, product_id="p1")
    again = await repo.create_conversation(MARY.id, product_id="p1")
    other = await repo.create_conversation(MARY.id, product_id="p2")

    assert first.id == again.id
    assert other.id != first.id

    with pytest.raises(LoadError) as exc_info:
        await repo.create_conversation("nobody")
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_memory_repository_unread_and_messages():
    """Test own messages do not count and reads clear the count."""
    repo = InMemoryHistoryRepository(VIEWER)
    repo.add_user(MARY)
    conversation = await repo.create_conversation(MARY.id)

    await repo.add_message(make_message(conversation.id, VIEWER.id, at(1)))
    await repo.add_message(make_message(conversation.id, MARY.id, at(2)))
    listed, = await repo.list_conversations()
    assert listed.unread_count == 1

    await repo.mark_read(conversation.id)
    listed, = await repo.list_conversations()
    assert listed.unread_count == 0

    messages = await repo.get_messages(conversation.id)
    assert [m.sender_id for m in messages] == [VIEWER.id, MARY.id]

    with pytest.raises(LoadError):
        await repo.get_messages("missing")

    stranger = Participant(id="u7", username="stranger")
    repo.add_user(stranger)
    assert (await repo.create_conversation(stranger.id)).other_participant(VIEWER.id) == stranger
