"""History API client over HTTP."""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from ..domain.errors import LoadError
from ..domain.models import Conversation, Message
from ..services.identity import IdentityProvider
from .base import HistoryRepository, check_related

logger = structlog.get_logger()


class HttpHistoryRepository(HistoryRepository):
    """History API client attaching the viewer's bearer token to every call."""

    def __init__(
        self,
        base_url: str,
        identity: IdentityProvider,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.identity = identity
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        token = await self.identity.get_token()
        if not token:
            raise LoadError("not signed in", status_code=401)
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("history_request_rejected", method=method, path=path, status=status)
            raise LoadError(f"{method} {path} failed with {status}", status_code=status) from e
        except httpx.HTTPError as e:
            logger.warning("history_request_failed", method=method, path=path, error=str(e))
            raise LoadError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            logger.warning("history_response_invalid", method=method, path=path, error=str(e))
            raise LoadError(f"{method} {path} returned invalid JSON") from e

    @staticmethod
    def _items(body: Any, key: str) -> List[Dict[str, Any]]:
        if isinstance(body, dict):
            body = body.get(key, [])
        if not isinstance(body, list):
            raise LoadError(f"expected a list of {key}")
        return body

    async def list_conversations(self, page: int = 1, limit: int = 50) -> List[Conversation]:
        """List conversations; malformed entries are skipped."""
        body = await self._request(
            "GET", "/conversations", params={"page": page, "limit": limit}
        )
        conversations = []
        for item in self._items(body, "conversations"):
            try:
                conversations.append(Conversation.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "conversation_skipped",
                    conversation_id=str(item.get("_id")) if isinstance(item, dict) else None,
                    error=str(e),
                )
        return conversations

    async def get_messages(
        self, conversation_id: str, page: int = 1, limit: int = 50
    ) -> List[Message]:
        """Get a page of messages for a conversation."""
        body = await self._request(
            "GET",
            f"/conversations/{conversation_id}/messages",
            params={"page": page, "limit": limit},
        )
        try:
            return [Message.model_validate(item) for item in self._items(body, "messages")]
        except ValidationError as e:
            raise LoadError(f"malformed messages for {conversation_id}") from e

    async def create_conversation(
        self,
        recipient_id: str,
        product_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> Conversation:
        """Create or fetch the conversation with a recipient."""
        check_related(product_id, job_id)
        payload: Dict[str, Any] = {"recipientId": recipient_id}
        if product_id:
            payload["productId"] = product_id
        if job_id:
            payload["jobId"] = job_id

        body = await self._request("POST", "/conversations", json=payload)
        try:
            conversation = Conversation.model_validate(body)
        except ValidationError as e:
            raise LoadError("malformed conversation in create response") from e
        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    async def close(self) -> None:
        await self._client.aclose()
