"""In-memory History API implementation."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import structlog

from ..domain.errors import LoadError
from ..domain.models import Conversation, Message, Participant
from .base import HistoryRepository, check_related

logger = structlog.get_logger()


class InMemoryHistoryRepository(HistoryRepository):
    """History API held in process memory, seen from one viewer.

    Behaves like the server: conversations sort by ``updated_at``, adding a
    message bumps its conversation and increments the viewer's unread count
    when someone else sent it.
    """

    def __init__(self, viewer: Participant) -> None:
        self.viewer = viewer
        self._users: Dict[str, Participant] = {viewer.id: viewer}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._async_lock = asyncio.Lock()
        self.failure: Optional[LoadError] = None
        self.list_calls = 0
        logger.info("history_repository_initialized", viewer_id=viewer.id)

    def add_user(self, participant: Participant) -> None:
        self._users[participant.id] = participant

    def _check_failure(self) -> None:
        if self.failure is not None:
            raise self.failure

    async def list_conversations(self, page: int = 1, limit: int = 50) -> List[Conversation]:
        """List conversations with page-based pagination."""
        async with self._async_lock:
            self.list_calls += 1
            self._check_failure()
            conversations = sorted(
                self._conversations.values(),
                key=lambda c: c.updated_at,
                reverse=True
            )
            offset = (page - 1) * limit
            return [c.model_copy(deep=True) for c in conversations[offset : offset + limit]]

    async def get_messages(
        self, conversation_id: str, page: int = 1, limit: int = 50
    ) -> List[Message]:
        """Get messages for a conversation, oldest first."""
        async with self._async_lock:
            self._check_failure()
            if conversation_id not in self._conversations:
                logger.error(
                    "conversation_not_found_for_messages",
                    conversation_id=conversation_id
                )
                raise LoadError(f"Conversation {conversation_id} not found", status_code=404)

            messages = sorted(self._messages[conversation_id], key=lambda m: m.created_at)
            offset = (page - 1) * limit
            return messages[offset : offset + limit]

    async def create_conversation(
        self,
        recipient_id: str,
        product_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation, or return the one with the same pair and link."""
        check_related(product_id, job_id)
        async with self._async_lock:
            self._check_failure()
            recipient = self._users.get(recipient_id)
            if recipient is None:
                raise LoadError(f"Recipient {recipient_id} not found", status_code=404)

            for conversation in self._conversations.values():
                ids = {p.id for p in conversation.participants}
                if (
                    ids == {self.viewer.id, recipient_id}
                    and conversation.product_id == product_id
                    and conversation.job_id == job_id
                ):
                    return conversation.model_copy(deep=True)

            conversation = Conversation(
                id=uuid4().hex,
                participants=[self.viewer, recipient],
                product_id=product_id,
                job_id=job_id,
                updated_at=datetime.now(timezone.utc),
            )
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=conversation.id)
            return conversation.model_copy(deep=True)

    async def add_message(self, message: Message) -> Message:
        """Record a message server-side, as if it had been sent."""
        async with self._async_lock:
            conversation = self._conversations.get(message.conversation_id)
            if not conversation:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=message.conversation_id
                )
                raise ValueError(f"Conversation {message.conversation_id} not found")

            self._messages[message.conversation_id].append(message)
            conversation.last_message = message
            conversation.updated_at = message.created_at
            if message.sender_id != self.viewer.id:
                conversation.unread_count += 1
            return message

    async def mark_read(self, conversation_id: str) -> None:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                conversation.unread_count = 0
