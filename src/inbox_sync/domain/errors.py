"""Error taxonomy for the conversation subsystem."""

from typing import Optional


class InboxError(Exception):
    """Base class for conversation subsystem errors."""
    pass


class ChannelAuthError(InboxError):
    """The event channel rejected the auth token; sign in again and retry."""
    pass


class ChannelDisconnect(InboxError):
    """The event channel dropped or could not connect. Transient."""
    pass


class LoadError(InboxError):
    """A History API call failed. Existing store state is kept."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class EventApplyError(InboxError):
    """A single inbound event was malformed and has been discarded."""
    pass
