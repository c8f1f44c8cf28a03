"""Shared builders and fakes for the test suite."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, List, Optional

from inbox_sync.domain.errors import ChannelDisconnect, LoadError
from inbox_sync.domain.models import ContentKind, Conversation, Message, Participant
from inbox_sync.repositories.base import HistoryRepository
from inbox_sync.services.backoff import ReconnectBackoff
from inbox_sync.services.channel import ChannelConnection

VIEWER = Participant(id="me", username="jdoe", first_name="Jane", last_name="Doe")
MARY = Participant(
    id="u2", username="greenvalley", first_name="Mary", last_name="Wanjiru", verified=True
)
JOHN = Participant(id="u3", username="kariukifarms", first_name="John", last_name="Kariuki")

T0 = datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)

_ids = count(1)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_message(
    conversation_id: str,
    sender_id: str,
    created_at: datetime,
    content: str = "hello",
    kind: ContentKind = ContentKind.TEXT,
    message_id: Optional[str] = None,
) -> Message:
    return Message(
        id=message_id or f"m{next(_ids)}",
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        kind=kind,
        created_at=created_at,
    )


def make_conversation(
    conversation_id: str,
    other: Participant,
    updated_at: datetime,
    unread: int = 0,
    last_message: Optional[Message] = None,
    **kwargs: Any,
) -> Conversation:
    return Conversation(
        id=conversation_id,
        participants=[VIEWER, other],
        updated_at=updated_at,
        unread_count=unread,
        last_message=last_message,
        **kwargs,
    )


def event_payload(message: Message) -> dict:
    """Wire shape of a message event."""
    return {
        "_id": message.id,
        "conversationId": message.conversation_id,
        "senderId": message.sender_id,
        "content": message.content,
        "messageType": message.kind.value,
        "createdAt": message.created_at.isoformat(),
    }


def fast_backoff(**kwargs: Any) -> ReconnectBackoff:
    options = dict(base_delay=0, max_delay=0, jitter=0, attempts_per_minute=100)
    options.update(kwargs)
    return ReconnectBackoff(**options)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class FakeHistory(HistoryRepository):
    """Scripted History API. Set ``gate`` to hold list calls open."""

    def __init__(self, conversations: Optional[List[Conversation]] = None) -> None:
        self.conversations = list(conversations or [])
        self.failure: Optional[LoadError] = None
        self.gate: Optional[asyncio.Event] = None
        self.list_calls = 0

    async def list_conversations(self, page: int = 1, limit: int = 50) -> List[Conversation]:
        self.list_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failure is not None:
            raise self.failure
        return [c.model_copy(deep=True) for c in self.conversations[:limit]]

    async def get_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> List[Message]:
        return []

    async def create_conversation(
        self,
        recipient_id: str,
        product_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Conversation:
        raise LoadError("not supported", status_code=501)


class FakeConnection(ChannelConnection):
    """In-memory channel connection driven by the test."""

    def __init__(self) -> None:
        self.frames: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.closed = False

    def push(self, event: str, data: Any) -> None:
        self.frames.put_nowait(json.dumps({"event": event, "data": data}))

    def push_message(self, message: Message) -> None:
        self.push("receive_message", event_payload(message))

    def push_raw(self, text: str) -> None:
        self.frames.put_nowait(text)

    def drop(self) -> None:
        self.frames.put_nowait(None)

    async def receive(self) -> Optional[str]:
        return await self.frames.get()

    async def send(self, text: str) -> None:
        if self.closed:
            raise ChannelDisconnect("connection closed")
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector returning ``FakeConnection``s, or raising scripted errors.

    Set ``gate`` to hold the handshake open.
    """

    def __init__(self, outcomes: Optional[List[Exception]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.connections: List[FakeConnection] = []
        self.tokens: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    async def __call__(self, url: str, token: str) -> ChannelConnection:
        self.tokens.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            raise self.outcomes.pop(0)
        connection = FakeConnection()
        self.connections.append(connection)
        return connection
