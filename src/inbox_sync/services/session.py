"""Signed-in session: wires identity, channel, queue, store and presenter.

One ``ChatSession`` lives from sign-in to sign-out. Channel and load errors
are recorded as banners for the UI and never stop the event stream.

The server only pushes ``receive_message`` to conversation rooms a socket has
joined, so the session joins every listed conversation after each snapshot
and again after every reconnect, since a new connection starts with no rooms.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set

import structlog

from ..config import Settings
from ..domain.errors import ChannelAuthError, ChannelDisconnect, InboxError, LoadError
from ..domain.models import Conversation, ConnectionState
from ..repositories.base import HistoryRepository
from ..repositories.http import HttpHistoryRepository
from .channel import EventChannel
from .event_queue import EventQueue
from .identity import IdentityProvider
from .presenter import ConversationListPresenter
from .store import ConversationStore
from .unread import UnreadTracker

logger = structlog.get_logger()

READ_EVENT = "mark_as_read"
JOIN_EVENT = "join_conversation"
LEAVE_EVENT = "leave_conversation"
SIGN_IN_AGAIN = "Please sign in again"
RELOAD_FAILED = "Could not refresh conversations. Tap to retry."


class ChatSession:
    """Owns the conversation subsystem for one signed-in viewer."""

    def __init__(
        self,
        identity: IdentityProvider,
        history: HistoryRepository,
        channel: EventChannel,
        settings: Optional[Settings] = None,
        on_navigate: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[InboxError], None]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.identity = identity
        self.history = history
        self.channel = channel
        self.store = ConversationStore(history, identity, page_size=self.settings.page_size)
        self.unread = UnreadTracker(self.store)
        self.presenter = ConversationListPresenter.for_timezone(
            self.store, self.settings.display_timezone
        )
        self.queue = EventQueue(self._apply_event)
        self.on_navigate = on_navigate
        self.on_error = on_error
        self.banners: List[str] = []
        self.joined: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._was_dropped = False

        self.channel.on_message(self.queue.submit)
        self.channel.on_state_change(self._on_channel_state)

    @classmethod
    def from_settings(
        cls,
        identity: IdentityProvider,
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> "ChatSession":
        """Session against the real History API and WebSocket channel."""
        settings = settings or Settings.from_env()
        history = HttpHistoryRepository(
            settings.api_base_url, identity, timeout=settings.request_timeout
        )
        return cls(identity, history, EventChannel.from_settings(settings), settings, **kwargs)

    def _report(self, error: InboxError, banner: str) -> None:
        self.banners.append(banner)
        if self.on_error is not None:
            self.on_error(error)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        """Open the event channel, then load the initial snapshot.

        The channel opens first so events pushed while the snapshot is in
        flight are queued and reconciled with it. Raises ``ChannelAuthError``
        when signed out or the token is rejected.
        """
        token = await self.identity.get_token()
        if not self.identity.is_authenticated() or not token:
            error = ChannelAuthError("not signed in")
            self._report(error, SIGN_IN_AGAIN)
            raise error

        self.queue.start()
        # Channel failures reach the banners through _on_channel_state
        try:
            await self.channel.open(token)
        except ChannelDisconnect as e:
            logger.warning("live_updates_unavailable", error=str(e))

        try:
            await self.store.load_initial()
        except LoadError as e:
            self._report(e, "Could not load conversations. Tap to retry.")
        await self._join_listed()
        logger.info("session_started", viewer_id=self.identity.current_user_id())

    def _on_channel_state(self, state: ConnectionState, error: Optional[InboxError]) -> None:
        if state in (ConnectionState.RECONNECTING, ConnectionState.CLOSED):
            self.joined.clear()
        if state == ConnectionState.RECONNECTING:
            self._was_dropped = True
        elif state == ConnectionState.OPEN and self._was_dropped:
            self._was_dropped = False
            self._spawn(self._resync())
        elif state == ConnectionState.CLOSED:
            self._was_dropped = False
            if isinstance(error, ChannelAuthError):
                self._report(error, SIGN_IN_AGAIN)
            elif error is not None:
                self._report(error, "Live updates unavailable")

    async def _resync(self) -> None:
        try:
            await self.store.on_reconnect()
        except LoadError as e:
            self._report(e, RELOAD_FAILED)
        # Rejoin even with a stale list, or nothing more would arrive
        await self._join_listed()

    async def _apply_event(self, payload: Any) -> None:
        conversation = self.store.apply_event_payload(payload)
        await self._join([conversation.id])

    async def _join(self, conversation_ids: Iterable[str]) -> None:
        for conversation_id in conversation_ids:
            if conversation_id in self.joined:
                continue
            if await self.channel.send(JOIN_EVENT, conversation_id):
                self.joined.add(conversation_id)

    async def _join_listed(self) -> None:
        await self._join(self.store.conversation_ids())

    async def _reload(self) -> None:
        await self.store.load_initial()
        await self._join_listed()

    def refresh(self) -> asyncio.Task:
        """Reload the snapshot in a cancellable task (the retry affordance)."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return self._refresh_task
        self._refresh_task = self._spawn(self._reload())
        return self._refresh_task

    # UI surface

    def conversations(self) -> List[Conversation]:
        return self.store.ordered_conversations()

    def search(self, term: str) -> List[Conversation]:
        return self.presenter.search(term)

    def total_unread(self) -> int:
        return self.unread.total_unread()

    async def mark_read(self, conversation_id: str) -> None:
        """Acknowledge locally and tell the server if the channel is open."""
        self.unread.mark_read(conversation_id)
        await self.channel.send(
            READ_EVENT,
            {"conversationId": conversation_id, "userId": self.identity.current_user_id()},
        )

    async def select(self, conversation_id: str) -> None:
        """The user opened a conversation from the list."""
        self.store.focused_conversation_id = conversation_id
        await self.mark_read(conversation_id)
        if self.on_navigate is not None:
            self.on_navigate(conversation_id)

    def leave_conversation(self) -> None:
        """The user left the conversation screen.

        The room stays joined: the list still shows that conversation and
        needs its events.
        """
        self.store.focused_conversation_id = None

    async def start_conversation(
        self,
        recipient_id: str,
        product_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Conversation:
        """Create or reuse a conversation, resync the list and navigate to it."""
        conversation = await self.history.create_conversation(
            recipient_id, product_id=product_id, job_id=job_id
        )
        try:
            await self.store.load_initial()
        except LoadError as e:
            self._report(e, RELOAD_FAILED)
        # An older conversation may sit past the first page
        await self._join([conversation.id])
        await self._join_listed()
        if self.on_navigate is not None:
            self.on_navigate(conversation.id)
        return conversation

    async def close(self) -> None:
        """Sign-out: stop loads, leave rooms, stop the channel and the queue, forget state."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for conversation_id in sorted(self.joined):
            await self.channel.send(LEAVE_EVENT, conversation_id)
        self.joined.clear()

        await self.channel.close()
        await self.queue.stop()
        await self.history.close()
        self.store.reset()
        logger.info("session_closed")
