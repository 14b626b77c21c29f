"""Wire schemas shared by the messaging client and the relay.

Every transport frame is a JSON object ``{"event": <name>, "data": <payload>}``.
Field names are camelCase because they are the wire format.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

# Maximum length of a chat message body
MAX_CONTENT_LENGTH = 2000


class Event(str, Enum):
    """Names of the events exchanged with the relay.

    Attributes:
        CONNECTED: Relay -> client, identity of the authenticated user.
        JOIN_WORKSPACE: Client -> relay, enter a workspace room.
        LEAVE_WORKSPACE: Client -> relay, leave a workspace room.
        SEND_MESSAGE: Client -> relay, publish a chat message.
        TYPING_START: Client -> relay, local user started typing.
        TYPING_STOP: Client -> relay, local user stopped typing.
        NEW_MESSAGE: Relay -> client, message broadcast (echoed to sender).
        USER_TYPING: Relay -> client, a peer started typing.
        USER_STOPPED_TYPING: Relay -> client, a peer stopped typing.
        MESSAGE_ERROR: Relay -> client, the last frame was rejected.
    """
    CONNECTED = "connected"
    JOIN_WORKSPACE = "join-workspace"
    LEAVE_WORKSPACE = "leave-workspace"
    SEND_MESSAGE = "send-message"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    NEW_MESSAGE = "new-message"
    USER_TYPING = "user-typing"
    USER_STOPPED_TYPING = "user-stopped-typing"
    MESSAGE_ERROR = "message-error"


class MessageType(str, Enum):
    """Type of chat message."""
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    """A chat message as stored by the relay and delivered to clients.

    Attributes:
        id: Unique message identifier (UUID, assigned by the relay).
        workspaceId: Workspace room this message belongs to.
        senderId: User ID of the author.
        senderName: Display name of the author.
        content: Message body, trimmed.
        type: Message type (text, file, image).
        timestamp: Time the relay accepted the message (timezone-aware).
        edited: Whether the message was edited after sending.
        editedAt: Time of the last edit, if any.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspaceId: str = Field(..., description="Workspace room ID")
    senderId: str = Field(..., description="User ID of the sender")
    senderName: str = Field(default="", description="Display name of the sender")
    content: str = Field(..., max_length=MAX_CONTENT_LENGTH)
    type: MessageType = Field(default=MessageType.TEXT)
    timestamp: datetime = Field(default_factory=_utcnow)
    edited: bool = False
    editedAt: Optional[datetime] = None

    @field_validator("timestamp", "editedAt")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Stamps without an offset are read as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Identity(BaseModel):
    """Authenticated user as reported by the relay on connect."""
    userId: str
    userName: str = ""


class WorkspacePayload(BaseModel):
    workspaceId: str = Field(..., min_length=1)


class SendMessagePayload(BaseModel):
    """Payload of a ``send-message`` frame."""
    workspaceId: str = Field(..., min_length=1)
    message: str
    type: MessageType = MessageType.TEXT


class TypingEvent(BaseModel):
    """Payload of a ``user-typing`` frame."""
    userId: str
    userName: str = ""


class TypingStopEvent(BaseModel):
    """Payload of a ``user-stopped-typing`` frame."""
    userId: str


class Frame(BaseModel):
    """One transport frame."""
    event: str
    data: Any = None


class HistoryResponse(BaseModel):
    """Body returned by ``GET /workspaces/{id}/messages``."""
    messages: list[Message] = Field(default_factory=list)
    hasMore: bool = False
