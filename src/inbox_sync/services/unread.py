"""Unread counters derived from the conversation store."""

from typing import List

import structlog

from .store import ConversationStore

logger = structlog.get_logger()


class UnreadTracker:
    """Per-conversation and total unread counts.

    Counts only rise through the store's event merge and only drop through
    ``mark_read``. The total is recomputed on every call.
    """

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    def mark_read(self, conversation_id: str) -> None:
        """Set one conversation's unread count to zero."""
        if not self.store.acknowledge_read(conversation_id):
            logger.debug("mark_read_unknown_conversation", conversation_id=conversation_id)

    def unread_for(self, conversation_id: str) -> int:
        return self.store.unread_counts().get(conversation_id, 0)

    def total_unread(self) -> int:
        return sum(self.store.unread_counts().values())

    def unread_conversations(self) -> List[str]:
        """Ids with unread messages, in list order."""
        return [cid for cid, count in self.store.unread_counts().items() if count > 0]
