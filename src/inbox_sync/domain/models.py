"""Domain models for the conversation list.

Field aliases follow the History API wire shape (``_id``, ``firstName``,
``lastMessage`` ...); every model also accepts its Python field names.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_id(value: Any) -> Any:
    """Reduce a populated reference (``{"_id": ...}``) to its id."""
    if isinstance(value, dict):
        return value.get("_id", value.get("id"))
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ContentKind(str, Enum):
    """Kind of message payload."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"


class ConnectionState(str, Enum):
    """Event channel connection state."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


class Participant(BaseModel):
    """Snapshot of a conversation member as received from the server."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(alias="_id")
    username: str = ""
    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    avatar_url: Optional[str] = Field(None, alias="profilePicture")
    verified: bool = False

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name} {self.last_name}".strip()
        return full_name or self.username or self.id


class Message(BaseModel):
    """A single message; the store keeps only the last one per conversation."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(alias="_id")
    conversation_id: str = Field(alias="conversationId")
    sender_id: str = Field(alias="senderId")
    sender: Optional[Participant] = None
    content: str = ""
    kind: ContentKind = Field(ContentKind.TEXT, alias="messageType")
    created_at: datetime = Field(alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _unpack_sender(cls, data: Any) -> Any:
        # senderId arrives populated from the list endpoint
        if isinstance(data, dict):
            raw = data.get("senderId", data.get("sender_id"))
            if isinstance(raw, dict):
                data = dict(data)
                data.pop("sender_id", None)
                data["senderId"] = _as_id(raw)
                data.setdefault("sender", raw)
        return data

    @field_validator("conversation_id", mode="before")
    @classmethod
    def _conversation_ref(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Conversation(BaseModel):
    """Two-party conversation summary as tracked by the store."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    participants: List[Participant] = Field(default_factory=list)
    product_id: Optional[str] = Field(None, alias="relatedProductId")
    job_id: Optional[str] = Field(None, alias="relatedJobId")
    last_message: Optional[Message] = Field(None, alias="lastMessage")
    updated_at: datetime = Field(alias="updatedAt")
    unread_count: int = Field(0, alias="unreadCount", ge=0)

    @model_validator(mode="before")
    @classmethod
    def _normalize_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        last = data.get("lastMessage", data.get("last_message"))
        if last is not None and not isinstance(last, (dict, Message)):
            # Unpopulated reference; the message body is unknown
            data.pop("last_message", None)
            data["lastMessage"] = None
        if "updatedAt" not in data and "updated_at" not in data:
            if isinstance(last, dict) and "createdAt" in last:
                data["updatedAt"] = last["createdAt"]
            elif isinstance(last, Message):
                data["updatedAt"] = last.created_at
            elif "createdAt" in data:
                data["updatedAt"] = data["createdAt"]
        return data

    @field_validator("product_id", "job_id", mode="before")
    @classmethod
    def _related_ref(cls, value: Any) -> Any:
        return _as_id(value)

    @field_validator("updated_at")
    @classmethod
    def _updated_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_shape(self) -> "Conversation":
        if self.product_id and self.job_id:
            raise ValueError("a conversation relates to a product or a job, not both")
        if len(self.participants) not in (0, 2):
            raise ValueError(
                f"expected two participants, got {len(self.participants)}"
            )
        return self

    @classmethod
    def placeholder(cls, conversation_id: str, updated_at: datetime) -> "Conversation":
        """Minimal conversation for an id first seen on the event channel."""
        return cls(id=conversation_id, updated_at=updated_at)

    @property
    def is_placeholder(self) -> bool:
        return not self.participants

    @property
    def related_entity(self) -> Optional[Tuple[str, str]]:
        if self.product_id:
            return ("product", self.product_id)
        if self.job_id:
            return ("job", self.job_id)
        return None

    def other_participant(self, viewer_id: Optional[str]) -> Optional[Participant]:
        """Return the participant who is not the viewer."""
        for participant in self.participants:
            if participant.id != viewer_id:
                return participant
        return None
