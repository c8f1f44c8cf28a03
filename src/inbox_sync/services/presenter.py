"""Read-only projection of the conversation list for display."""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from ..domain.models import ContentKind, Conversation
from .store import ConversationStore

KIND_LABELS = {
    ContentKind.IMAGE: "Photo",
    ContentKind.FILE: "File",
    ContentKind.VOICE: "Voice message",
}
NO_MESSAGES = "No messages yet"
UNKNOWN_PARTICIPANT = "Unknown"


class ConversationRow(BaseModel):
    """One rendered entry of the conversation list."""

    id: str
    title: str
    avatar_url: Optional[str] = None
    verified: bool = False
    preview: str
    time_label: str
    unread_count: int
    related_entity: Optional[Tuple[str, str]] = None


class ConversationListPresenter:
    """Search, preview and timestamp formatting over the store."""

    def __init__(self, store: ConversationStore, tz: Optional[tzinfo] = None) -> None:
        self.store = store
        self.tz = tz or timezone.utc

    @classmethod
    def for_timezone(cls, store: ConversationStore, name: str) -> "ConversationListPresenter":
        tz = timezone.utc if name.upper() == "UTC" else ZoneInfo(name)
        return cls(store, tz)

    def search(self, term: str) -> List[Conversation]:
        """Conversations matching ``term``, keeping list order."""
        conversations = self.store.ordered_conversations()
        needle = (term or "").strip().lower()
        if not needle:
            return conversations
        return [c for c in conversations if self._matches(c, needle)]

    def _matches(self, conversation: Conversation, needle: str) -> bool:
        haystack = []
        other = conversation.other_participant(self.store.viewer_id)
        if other is not None:
            haystack += [
                other.first_name,
                other.last_name,
                f"{other.first_name} {other.last_name}",
                other.username,
            ]
        if conversation.last_message is not None:
            haystack.append(self.preview_for(conversation))
        return any(needle in value.lower() for value in haystack if value)

    def preview_for(self, conversation: Conversation) -> str:
        message = conversation.last_message
        if message is None:
            return NO_MESSAGES
        if message.kind == ContentKind.TEXT:
            return message.content
        return KIND_LABELS[message.kind]

    def relative_time(self, conversation: Conversation, now: Optional[datetime] = None) -> str:
        """Clock time under a day old, "Yesterday" up to two days, else a short date."""
        now = now or datetime.now(timezone.utc)
        age = now - conversation.updated_at
        local = conversation.updated_at.astimezone(self.tz)
        if age < timedelta(hours=24):
            return local.strftime("%H:%M")
        if age < timedelta(hours=48):
            return "Yesterday"
        return f"{local:%b} {local.day}"

    def title_for(self, conversation: Conversation) -> str:
        other = conversation.other_participant(self.store.viewer_id)
        return other.display_name if other else UNKNOWN_PARTICIPANT

    def rows(
        self, term: str = "", unread_only: bool = False, now: Optional[datetime] = None
    ) -> List[ConversationRow]:
        """Display rows for the UI, optionally only unread conversations."""
        now = now or datetime.now(timezone.utc)
        rows = []
        for conversation in self.search(term):
            if unread_only and conversation.unread_count == 0:
                continue
            other = conversation.other_participant(self.store.viewer_id)
            rows.append(
                ConversationRow(
                    id=conversation.id,
                    title=self.title_for(conversation),
                    avatar_url=other.avatar_url if other else None,
                    verified=other.verified if other else False,
                    preview=self.preview_for(conversation),
                    time_label=self.relative_time(conversation, now=now),
                    unread_count=conversation.unread_count,
                    related_entity=conversation.related_entity,
                )
            )
        return rows
