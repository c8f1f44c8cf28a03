"""Identity provider boundary."""

from abc import ABC, abstractmethod
from typing import Optional


class IdentityProvider(ABC):
    """Source of truth for who the viewer is and how they authenticate."""

    @abstractmethod
    def current_user_id(self) -> Optional[str]:
        """The viewer's id, or None when signed out."""
        pass

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """A bearer token for the viewer, or None when signed out."""
        pass

    def is_authenticated(self) -> bool:
        return self.current_user_id() is not None


class StaticIdentityProvider(IdentityProvider):
    """Identity with a fixed user id and token, e.g. from a login response."""

    def __init__(self, user_id: Optional[str], token: Optional[str]) -> None:
        self._user_id = user_id
        self._token = token

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    async def get_token(self) -> Optional[str]:
        return self._token

    def update(self, user_id: Optional[str], token: Optional[str]) -> None:
        """Swap credentials after a re-authentication."""
        self._user_id = user_id
        self._token = token

    def sign_out(self) -> None:
        self.update(None, None)
