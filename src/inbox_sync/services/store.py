"""Conversation store: the ordered, in-memory conversation list.

The list changes through two entry points only. ``load_initial`` replaces it
with a History API snapshot, and ``apply_message_event`` merges one live
event. Every mutation runs without awaiting, so each one is atomic on the
event loop. A load only suspends while fetching.

Events applied while a load is in flight are recorded and replayed on top of
the snapshot when it lands, unless the snapshot already reflects them. That
way a slow load never regresses newer live state, and events merged before
the load started are never counted twice.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from ..domain.errors import EventApplyError, LoadError
from ..domain.models import Conversation, Message
from ..metrics import EVENTS_APPLIED, LOAD_FAILURES, RESYNCS
from ..repositories.base import HistoryRepository
from .identity import IdentityProvider

logger = structlog.get_logger()


@dataclass
class _Delta:
    """A live change made while a snapshot load was in flight."""

    conversation_id: str
    message: Optional[Message] = None  # None for a read acknowledgement


class ConversationStore:
    """Single source of truth for the viewer's conversation list."""

    def __init__(
        self,
        history: HistoryRepository,
        identity: IdentityProvider,
        page_size: int = 50,
    ) -> None:
        self.history = history
        self.identity = identity
        self.page_size = page_size
        self.focused_conversation_id: Optional[str] = None
        self.load_count = 0
        self._conversations: Dict[str, Conversation] = {}
        self._order: List[str] = []
        self._load_lock = asyncio.Lock()
        self._in_flight: Optional[List[_Delta]] = None

    @property
    def viewer_id(self) -> Optional[str]:
        return self.identity.current_user_id()

    @property
    def loading(self) -> bool:
        return self._in_flight is not None

    def __len__(self) -> int:
        return len(self._order)

    # Reads

    def ordered_conversations(self) -> List[Conversation]:
        """Copies of all conversations, most recently active first."""
        return [self._conversations[cid].model_copy(deep=True) for cid in self._order]

    def get(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    def conversation_ids(self) -> List[str]:
        return list(self._order)

    def unread_counts(self) -> Dict[str, int]:
        """Per-conversation unread counts in list order."""
        return {cid: self._conversations[cid].unread_count for cid in self._order}

    # Snapshot entry point

    async def load_initial(self) -> List[Conversation]:
        """Replace the list with the first History API page.

        Raises ``LoadError`` and keeps the current list if the fetch fails.
        Cancelling the call while it fetches leaves the list untouched.
        """
        async with self._load_lock:
            deltas: List[_Delta] = []
            self._in_flight = deltas
            try:
                snapshot = await self.history.list_conversations(page=1, limit=self.page_size)
            except LoadError as e:
                LOAD_FAILURES.inc()
                logger.warning(
                    "load_failed",
                    error=str(e),
                    status_code=e.status_code,
                    kept_conversations=len(self._order)
                )
                raise
            finally:
                self._in_flight = None

            self._replace(snapshot, deltas)
            self.load_count += 1
            logger.info(
                "snapshot_applied",
                conversations=len(self._order),
                live_deltas=len(deltas)
            )
            return self.ordered_conversations()

    async def on_reconnect(self) -> List[Conversation]:
        """Resynchronize after the event channel comes back."""
        RESYNCS.inc()
        logger.info("resync_started")
        return await self.load_initial()

    def _replace(self, snapshot: List[Conversation], deltas: List[_Delta]) -> None:
        conversations: Dict[str, Conversation] = {}
        order: List[str] = []
        for conversation in snapshot:
            if conversation.id in conversations:
                continue
            conversations[conversation.id] = conversation.model_copy(deep=True)
            order.append(conversation.id)
        self._conversations = conversations
        self._order = order

        # Everything up to the snapshot's own last message is already in it,
        # reads included: replaying those would clear newer unread messages
        reflected_upto: Dict[str, int] = {}
        for index, delta in enumerate(deltas):
            conversation = conversations.get(delta.conversation_id)
            if (
                delta.message is not None
                and conversation is not None
                and conversation.last_message is not None
                and conversation.last_message.id == delta.message.id
            ):
                reflected_upto[delta.conversation_id] = index

        for index, delta in enumerate(deltas):
            if index <= reflected_upto.get(delta.conversation_id, -1):
                continue
            if delta.message is None:
                self._clear_unread(delta.conversation_id)
            else:
                self._merge(delta.message)

    # Live event entry point

    def apply_message_event(self, message: Message) -> Conversation:
        """Merge one inbound message and return the updated conversation."""
        conversation = self._merge(message)
        if self._in_flight is not None:
            self._in_flight.append(_Delta(message.conversation_id, message))
        EVENTS_APPLIED.inc()
        logger.debug(
            "event_applied",
            conversation_id=message.conversation_id,
            message_id=message.id,
            unread_count=conversation.unread_count
        )
        return conversation.model_copy(deep=True)

    def apply_event_payload(self, payload: Any) -> Conversation:
        """Validate a raw channel payload and merge it."""
        if not isinstance(payload, Message):
            try:
                payload = Message.model_validate(payload)
            except ValidationError as e:
                raise EventApplyError(f"malformed message event: {e.error_count()} errors") from e
        return self.apply_message_event(payload)

    def _merge(self, message: Message) -> Conversation:
        conversation_id = message.conversation_id
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation.placeholder(conversation_id, message.created_at)
            self._conversations[conversation_id] = conversation
            logger.info("conversation_synthesized", conversation_id=conversation_id)
        else:
            self._order.remove(conversation_id)

        # Arrival order wins; timestamps are never compared
        conversation.last_message = message
        conversation.updated_at = message.created_at
        self._order.insert(0, conversation_id)

        if message.sender_id != self.viewer_id and conversation_id != self.focused_conversation_id:
            conversation.unread_count += 1
        return conversation

    # Read acknowledgement

    def acknowledge_read(self, conversation_id: str) -> bool:
        """Zero a conversation's unread count; False if the id is unknown."""
        known = self._clear_unread(conversation_id)
        if self._in_flight is not None:
            self._in_flight.append(_Delta(conversation_id))
        return known

    def _clear_unread(self, conversation_id: str) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        conversation.unread_count = 0
        return True

    def reset(self) -> None:
        """Forget all state, e.g. on sign-out."""
        self._conversations = {}
        self._order = []
        self.focused_conversation_id = None
        logger.info("store_reset")
