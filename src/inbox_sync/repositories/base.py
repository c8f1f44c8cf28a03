"""History API repository interface."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import Conversation, Message


class HistoryRepository(ABC):
    """Request/response access to past conversations and messages.

    Implementations raise ``LoadError`` for any failure.
    """

    @abstractmethod
    async def list_conversations(self, page: int = 1, limit: int = 50) -> List[Conversation]:
        """List the viewer's conversations, most recently active first."""
        pass

    @abstractmethod
    async def get_messages(
        self, conversation_id: str, page: int = 1, limit: int = 50
    ) -> List[Message]:
        """Get a page of messages for a conversation, oldest first."""
        pass

    @abstractmethod
    async def create_conversation(
        self,
        recipient_id: str,
        product_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation with a recipient, or return the existing one."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None


def check_related(product_id: Optional[str], job_id: Optional[str]) -> None:
    if product_id and job_id:
        raise ValueError("product_id and job_id are mutually exclusive")
