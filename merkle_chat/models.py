"""
Pydantic models for messages, queued items and session snapshots.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from merkle_chat.errors import ErrorCategory


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    text: str
    sender: Sender
    created_at: datetime = Field(default_factory=utcnow)
    is_provisional: bool = False


class PendingItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    enqueued_at: datetime = Field(default_factory=utcnow)
    message_id: Optional[str] = None


class SessionSnapshot(BaseModel):
    """Read-only view of the session handed to observers and the API."""
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    messages: List[Message]
    queue_length: int
    is_loading: bool
    is_typing: bool
    is_draining_queue: bool
    connection_status: ConnectionStatus
    retry_count: int
    last_error: Optional[str] = None
    last_error_category: Optional[ErrorCategory] = None


class StoredChatData(BaseModel):
    messages: List[Message]
    last_updated: datetime
    session_id: Optional[str] = None


class SubmitRequest(BaseModel):
    content: str


class SubmitResponse(BaseModel):
    message: Message
    queue_length: int
