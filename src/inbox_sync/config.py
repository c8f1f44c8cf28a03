"""Runtime configuration read from the environment."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Connection, reconnect and display settings.

    Every field can be overridden by an ``INBOX_``-prefixed environment
    variable, e.g. ``INBOX_WS_URL`` or ``INBOX_PAGE_SIZE``.
    """

    model_config = SettingsConfigDict(env_prefix="INBOX_")

    api_base_url: str = "http://localhost:5000/api"
    ws_url: str = "ws://localhost:5000/ws"
    request_timeout: float = Field(10.0, gt=0)
    page_size: int = Field(50, gt=0)

    # Reconnect backoff: base * 2**(attempt - 1), capped at max delay
    reconnect_base_delay: float = Field(1.0, ge=0)
    reconnect_max_delay: float = Field(30.0, ge=0)
    reconnect_jitter: float = Field(0.1, ge=0, le=1)
    reconnect_attempts_per_minute: int = Field(6, gt=0)
    reconnect_max_attempts: int = Field(10, gt=0)
    heartbeat: float = Field(20.0, gt=0)

    display_timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from INBOX_* environment variables."""
        return cls()
