"""
Base gateway abstraction.
All backends implement this interface so the stores can treat them uniformly.

Write calls are coroutines. Subscribe calls are plain functions: they open a
live feed and return its unsubscribe callable. A feed calls `on_snapshot`
with the full current sequence (not deltas) every time it changes, and calls
`on_error` at most once if the feed dies.
"""

from __future__ import annotations

import abc
import logging
from typing import Callable

from matchbox.models import Conversation, Message, TypingIndicator

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
MessagesCallback = Callable[[list[Message]], None]
ConversationsCallback = Callable[[list[Conversation]], None]
TypingCallback = Callable[[list[TypingIndicator]], None]
ErrorCallback = Callable[[Exception], None]


class GatewayError(Exception):
    """The backend rejected a call or could not be reached."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class SubscriptionError(GatewayError):
    """A live feed could not be opened."""


class BaseGateway(abc.ABC):
    """
    Abstract base for backend gateways.
    Each gateway knows how to read, write and watch conversations.
    """

    name: str = "gateway"

    @abc.abstractmethod
    def subscribe_to_messages(
        self,
        conversation_id: str,
        on_snapshot: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Watch a conversation's messages, ordered by timestamp ascending."""
        ...

    @abc.abstractmethod
    async def send_message(self, conversation_id: str, message: Message) -> str:
        """Persist a message. Returns the server-assigned id."""
        ...

    @abc.abstractmethod
    async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> None:
        """Mark every message not sent by `user_id` as read."""
        ...

    @abc.abstractmethod
    async def upload_media(self, local_uri: str, conversation_id: str, temp_id: str) -> str:
        """Upload a device-local file. Returns its durable download URL."""
        ...

    @abc.abstractmethod
    def subscribe_to_conversations(
        self,
        user_id: str,
        on_snapshot: ConversationsCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Watch a user's inbox, most recent conversation first."""
        ...

    @abc.abstractmethod
    async def update_typing_status(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        ...

    @abc.abstractmethod
    def subscribe_to_typing(
        self,
        conversation_id: str,
        on_snapshot: TypingCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Watch typing indicators for every participant of a conversation."""
        ...

    async def health_check(self) -> bool:
        """Check if the backend is reachable."""
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
