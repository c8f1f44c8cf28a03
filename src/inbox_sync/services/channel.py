"""Event channel: one authenticated, persistent connection for live events.

Frames are JSON objects ``{"event": <name>, "data": ...}``. Each event name is
delivered to the handlers registered for it and frames nobody subscribed to
(``user_typing`` ...) are dropped. The channel reconnects
on its own after an unexpected drop. It never buffers or replays what was
missed; subscribers learn about the gap from the ``reconnecting`` -> ``open``
transition and resynchronize.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog

from ..config import Settings
from ..domain.errors import ChannelAuthError, ChannelDisconnect, EventApplyError, InboxError
from ..domain.models import ConnectionState
from ..metrics import EVENTS_DISCARDED, RECONNECT_ATTEMPTS
from .backoff import ReconnectBackoff

logger = structlog.get_logger()

MESSAGE_EVENT = "receive_message"

MessageHandler = Callable[[Any], None]
StateHandler = Callable[[ConnectionState, Optional[InboxError]], None]


class ChannelConnection(ABC):
    """A live transport connection."""

    @abstractmethod
    async def receive(self) -> Optional[str]:
        """Next text frame, or None once the connection has closed."""
        pass

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send a text frame; raises ``ChannelDisconnect`` on failure."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


Connector = Callable[[str, str], Awaitable[ChannelConnection]]


class AiohttpConnection(ChannelConnection):
    """WebSocket connection backed by aiohttp."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    async def receive(self) -> Optional[str]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def send(self, text: str) -> None:
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise ChannelDisconnect(f"send failed: {e}") from e

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


class AiohttpConnector:
    """Opens WebSocket connections presenting a bearer token at handshake."""

    def __init__(self, heartbeat: float = 20.0, connect_timeout: float = 10.0):
        self.heartbeat = heartbeat
        self.connect_timeout = connect_timeout

    async def __call__(self, url: str, token: str) -> ChannelConnection:
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
        )
        try:
            ws = await session.ws_connect(
                url,
                headers={"Authorization": f"Bearer {token}"},
                heartbeat=self.heartbeat,
            )
        except aiohttp.WSServerHandshakeError as e:
            await session.close()
            if e.status in (401, 403):
                raise ChannelAuthError(f"token rejected ({e.status})") from e
            raise ChannelDisconnect(f"handshake failed ({e.status})") from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await session.close()
            raise ChannelDisconnect(f"connect failed: {e}") from e
        return AiohttpConnection(session, ws)


class EventChannel:
    """Maintains one connection and hides reconnect mechanics."""

    def __init__(
        self,
        url: str,
        connector: Optional[Connector] = None,
        backoff: Optional[ReconnectBackoff] = None,
        max_attempts: int = 10,
    ) -> None:
        self.url = url
        self.state = ConnectionState.CLOSED
        self.max_attempts = max_attempts
        self._connector = connector or AiohttpConnector()
        self.backoff = backoff or ReconnectBackoff()
        self._event_handlers: Dict[str, List[MessageHandler]] = {}
        self._state_handlers: List[StateHandler] = []
        self._connection: Optional[ChannelConnection] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._token: Optional[str] = None
        self._closing = False

    @classmethod
    def from_settings(cls, settings: Settings, connector: Optional[Connector] = None) -> "EventChannel":
        return cls(
            settings.ws_url,
            connector=connector or AiohttpConnector(
                heartbeat=settings.heartbeat, connect_timeout=settings.request_timeout
            ),
            backoff=ReconnectBackoff(
                base_delay=settings.reconnect_base_delay,
                max_delay=settings.reconnect_max_delay,
                jitter=settings.reconnect_jitter,
                attempts_per_minute=settings.reconnect_attempts_per_minute,
            ),
            max_attempts=settings.reconnect_max_attempts,
        )

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback for each inbound message payload."""
        self.on_event(MESSAGE_EVENT, handler)

    def on_event(self, event_name: str, handler: MessageHandler) -> None:
        """Register a callback for the payloads of one server event."""
        self._event_handlers.setdefault(event_name, []).append(handler)

    def on_state_change(self, handler: StateHandler) -> None:
        """Register a callback for connection state transitions."""
        self._state_handlers.append(handler)

    def _set_state(self, state: ConnectionState, error: Optional[InboxError] = None) -> None:
        self.state = state
        logger.info(
            "channel_state_changed",
            state=state.value,
            error=str(error) if error else None
        )
        for handler in list(self._state_handlers):
            try:
                handler(state, error)
            except Exception as e:
                logger.error("state_handler_error", state=state.value, error=str(e))

    async def open(self, auth_token: str) -> None:
        """Connect and authenticate.

        Raises ``ChannelAuthError`` if the token is rejected and
        ``ChannelDisconnect`` if the server cannot be reached.
        """
        if self.state != ConnectionState.CLOSED:
            logger.warning("channel_already_active", state=self.state.value)
            return

        self._closing = False
        self._token = auth_token
        self._set_state(ConnectionState.CONNECTING)
        try:
            connection = await self._connector(self.url, auth_token)
        except (ChannelAuthError, ChannelDisconnect) as e:
            self._set_state(ConnectionState.CLOSED, e)
            raise
        if self._closing:
            # close() ran while the handshake was in flight
            await self._close_connection(connection)
            return
        self._attach(connection)

    def _attach(self, connection: ChannelConnection) -> None:
        self._connection = connection
        self._set_state(ConnectionState.OPEN)
        self._reader = asyncio.create_task(self._read_loop(connection))

    async def _read_loop(self, connection: ChannelConnection) -> None:
        try:
            while True:
                frame = await connection.receive()
                if frame is None:
                    break
                self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("channel_read_failed", error=str(e))

        if self._closing:
            return
        await self._close_connection(connection)
        self._set_state(ConnectionState.RECONNECTING, ChannelDisconnect("connection lost"))
        self._reconnector = asyncio.create_task(self._reconnect_loop())

    def _dispatch(self, frame: str) -> None:
        try:
            envelope = json.loads(frame)
            if not isinstance(envelope, dict):
                raise ValueError("frame is not an object")
        except ValueError as e:
            EVENTS_DISCARDED.inc()
            error = EventApplyError(f"undecodable frame: {e}")
            logger.warning("event_discarded", error=str(error))
            return

        event_name = envelope.get("event")
        handlers = self._event_handlers.get(event_name)
        if not handlers:
            logger.debug("channel_event_ignored", event_name=event_name)
            return

        for handler in list(handlers):
            try:
                handler(envelope.get("data"))
            except Exception as e:
                logger.error("event_handler_error", event_name=event_name, error=str(e))

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closing:
            attempt += 1
            if attempt > self.max_attempts:
                self._set_state(
                    ConnectionState.CLOSED,
                    ChannelDisconnect(f"gave up after {self.max_attempts} attempts")
                )
                return

            await self.backoff.wait(attempt)
            RECONNECT_ATTEMPTS.inc()
            logger.info("channel_reconnecting", attempt=attempt)
            try:
                connection = await self._connector(self.url, self._token)
            except ChannelAuthError as e:
                self._set_state(ConnectionState.CLOSED, e)
                return
            except ChannelDisconnect as e:
                logger.warning("channel_reconnect_failed", attempt=attempt, error=str(e))
                continue

            if self._closing:
                await self._close_connection(connection)
                return
            self._attach(connection)
            return

    async def send(self, event: str, data: Any) -> bool:
        """Send a frame if open; returns whether it was written."""
        if self.state != ConnectionState.OPEN or self._connection is None:
            return False
        try:
            await self._connection.send(json.dumps({"event": event, "data": data}))
        except ChannelDisconnect as e:
            logger.warning("channel_send_failed", event_name=event, error=str(e))
            return False
        return True

    async def _close_connection(self, connection: ChannelConnection) -> None:
        try:
            await connection.close()
        except (OSError, aiohttp.ClientError) as e:
            logger.debug("channel_close_error", error=str(e))
        if self._connection is connection:
            self._connection = None

    async def close(self) -> None:
        """Release the connection and stop reconnecting. Idempotent."""
        self._closing = True
        current = asyncio.current_task()
        tasks = [
            task for task in (self._reconnector, self._reader)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader = None
        self._reconnector = None

        if self._connection is not None:
            await self._close_connection(self._connection)
        if self.state != ConnectionState.CLOSED:
            self._set_state(ConnectionState.CLOSED)
