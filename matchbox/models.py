"""
Data models for conversation sync.
These define the shape of data flowing between the gateway, the stores
and the local cache.

Dict form (to_dict / from_dict) uses the backend's document keys, which is
also what gets persisted in the local cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

TEMP_ID_PREFIX = "temp-"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_temp_id() -> str:
    """Client-side id for a message the backend hasn't confirmed yet."""
    return f"{TEMP_ID_PREFIX}{uuid4().hex}"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    UPLOADING = "uploading"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    GIF = "gif"
    STICKER = "sticker"


# Allowed lifecycle moves. READ is terminal.
TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENDING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.UPLOADING: frozenset({MessageStatus.SENT, MessageStatus.FAILED}),
    MessageStatus.FAILED: frozenset({MessageStatus.SENDING, MessageStatus.UPLOADING}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
}

# Statuses that only exist on this device until the backend confirms them
PENDING_STATUSES = frozenset({MessageStatus.SENDING, MessageStatus.UPLOADING, MessageStatus.FAILED})


class IllegalTransitionError(ValueError):
    """A message was asked to move to a status its lifecycle doesn't allow."""

    def __init__(self, message_id: str, current: MessageStatus, target: MessageStatus):
        self.message_id = message_id
        self.current = current
        self.target = target
        super().__init__(f"Message {message_id}: cannot go from {current.value} to {target.value}")


def _coerce(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class Message:
    """A single chat message."""
    id: str = field(default_factory=new_temp_id)
    conversation_id: str = ""
    sender: str = ""
    text: str = ""
    timestamp: str = field(default_factory=utcnow_iso)
    read: bool = False
    status: MessageStatus = MessageStatus.SENDING
    type: MessageType = MessageType.TEXT
    media_url: str | None = None
    local_uri: str | None = None  # device path while an upload is pending
    is_offline_queued: bool = False
    retry_count: int = 0

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @property
    def is_pending(self) -> bool:
        """Still local-only: never confirmed by the backend."""
        return self.is_temporary and self.status in PENDING_STATUSES

    def transition(self, target: MessageStatus, **changes) -> Message:
        """Return a copy moved to `target`, or raise IllegalTransitionError."""
        if target not in TRANSITIONS[self.status]:
            raise IllegalTransitionError(self.id, self.status, target)
        return replace(self, status=target, **changes)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "conversationId": self.conversation_id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp,
            "read": self.read,
            "status": self.status.value,
            "type": self.type.value,
            "isOfflineQueued": self.is_offline_queued,
            "retryCount": self.retry_count,
        }
        if self.media_url is not None:
            data["mediaUrl"] = self.media_url
        if self.local_uri is not None:
            data["localUri"] = self.local_uri
        return data

    def to_draft(self) -> dict:
        """Payload for the gateway's create-message call (no id, no local fields)."""
        data = self.to_dict()
        for key in ("id", "localUri", "isOfflineQueued", "retryCount"):
            data.pop(key, None)
        data["status"] = MessageStatus.SENT.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            id=str(data.get("id") or new_temp_id()),
            conversation_id=data.get("conversationId", ""),
            sender=data.get("sender", ""),
            text=data.get("text", ""),
            timestamp=data.get("timestamp") or utcnow_iso(),
            read=bool(data.get("read", False)),
            status=_coerce(MessageStatus, data.get("status", "sent"), MessageStatus.SENT),
            type=_coerce(MessageType, data.get("type", "text"), MessageType.TEXT),
            media_url=data.get("mediaUrl"),
            local_uri=data.get("localUri"),
            is_offline_queued=bool(data.get("isOfflineQueued", False)),
            retry_count=int(data.get("retryCount", 0) or 0),
        )


@dataclass
class PeerSummary:
    """The other participant, as shown in the inbox."""
    name: str = ""
    photo: str = ""
    online: bool = False
    id: str | None = None
    distance: float | None = None  # miles

    def to_dict(self) -> dict:
        data = {"name": self.name, "photo": self.photo, "online": self.online}
        if self.id is not None:
            data["id"] = self.id
        if self.distance is not None:
            data["distance"] = self.distance
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PeerSummary:
        return cls(
            name=data.get("name", ""),
            photo=data.get("photo", ""),
            online=bool(data.get("online", False)),
            id=data.get("id"),
            distance=data.get("distance"),
        )


@dataclass
class LastMessage:
    text: str = ""
    timestamp: str = ""
    read: bool = False

    def to_dict(self) -> dict:
        return {"text": self.text, "timestamp": self.timestamp, "read": self.read}

    @classmethod
    def from_dict(cls, data: dict) -> LastMessage:
        return cls(
            text=data.get("text", ""),
            timestamp=data.get("timestamp", ""),
            read=bool(data.get("read", False)),
        )


@dataclass
class TypingStatus:
    is_typing: bool = False
    last_typed: str = ""

    def to_dict(self) -> dict:
        return {"isTyping": self.is_typing, "lastTyped": self.last_typed}

    @classmethod
    def from_dict(cls, data: dict) -> TypingStatus:
        return cls(is_typing=bool(data.get("isTyping", False)), last_typed=data.get("lastTyped", ""))


@dataclass
class Conversation:
    """A match's chat thread, summarized for the inbox."""
    id: str = field(default_factory=lambda: uuid4().hex)
    user_id: str = ""
    user: PeerSummary = field(default_factory=PeerSummary)
    last_message: LastMessage = field(default_factory=LastMessage)
    typing_status: TypingStatus | None = None
    unread_count: int = 0

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "user": self.user.to_dict(),
            "lastMessage": self.last_message.to_dict(),
            "unreadCount": self.unread_count,
        }
        if self.typing_status is not None:
            data["typingStatus"] = self.typing_status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Conversation:
        typing = data.get("typingStatus")
        return cls(
            id=str(data.get("id", "")),
            user_id=data.get("userId", ""),
            user=PeerSummary.from_dict(data.get("user") or {}),
            last_message=LastMessage.from_dict(data.get("lastMessage") or {}),
            typing_status=TypingStatus.from_dict(typing) if typing else None,
            unread_count=int(data.get("unreadCount", 0) or 0),
        )


@dataclass
class TypingIndicator:
    user_id: str
    conversation_id: str
    timestamp: str = field(default_factory=utcnow_iso)
    is_typing: bool = False

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "conversationId": self.conversation_id,
            "timestamp": self.timestamp,
            "isTyping": self.is_typing,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TypingIndicator:
        return cls(
            user_id=data.get("userId", ""),
            conversation_id=data.get("conversationId", ""),
            timestamp=data.get("timestamp") or utcnow_iso(),
            is_typing=bool(data.get("isTyping", False)),
        )


def parse_timestamp(ts: str) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
