"""
In-process gateway.

Keeps everything in dicts and notifies listeners synchronously on every
write, like a local emulator would. Used for offline development, the CLI
demo path (gateway.type: memory) and the test-suite. `push()` and
`push_conversations()` play the part of writes made by other devices.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from uuid import uuid4

from matchbox.gateway.base import (
    BaseGateway,
    ConversationsCallback,
    ErrorCallback,
    MessagesCallback,
    TypingCallback,
    Unsubscribe,
)
from matchbox.models import (
    Conversation,
    LastMessage,
    Message,
    MessageStatus,
    TypingIndicator,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


class MemoryGateway(BaseGateway):

    def __init__(self, name: str = "memory", **_):
        self.name = name
        self.messages: dict[str, list[Message]] = {}
        self.conversations: dict[str, list[Conversation]] = {}
        self.typing: dict[str, dict[str, TypingIndicator]] = {}
        self.media: dict[str, str] = {}
        self._message_listeners: dict[str, list[MessagesCallback]] = {}
        self._conversation_listeners: dict[str, list[ConversationsCallback]] = {}
        self._typing_listeners: dict[str, list[TypingCallback]] = {}

    # ------------------------------------------------------------------
    # Listener plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _listen(registry: dict[str, list], key: str, callback) -> Unsubscribe:
        registry.setdefault(key, []).append(callback)

        def unsubscribe():
            listeners = registry.get(key, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def listener_count(self, conversation_id: str) -> int:
        return len(self._message_listeners.get(conversation_id, []))

    def _emit_messages(self, conversation_id: str):
        snapshot = self.messages.get(conversation_id, [])
        for callback in list(self._message_listeners.get(conversation_id, [])):
            callback([replace(m) for m in snapshot])

    def _emit_conversations(self, user_id: str):
        snapshot = self.conversations.get(user_id, [])
        for callback in list(self._conversation_listeners.get(user_id, [])):
            callback([replace(c) for c in snapshot])

    def _emit_typing(self, conversation_id: str):
        snapshot = list(self.typing.get(conversation_id, {}).values())
        for callback in list(self._typing_listeners.get(conversation_id, [])):
            callback(list(snapshot))

    # ------------------------------------------------------------------
    # Server-side writes from elsewhere
    # ------------------------------------------------------------------

    def push(self, conversation_id: str, messages: list[Message]):
        """Replace a conversation's messages and notify listeners."""
        self.messages[conversation_id] = list(messages)
        self._emit_messages(conversation_id)

    def push_conversations(self, user_id: str, conversations: list[Conversation]):
        self.conversations[user_id] = list(conversations)
        self._emit_conversations(user_id)

    # ------------------------------------------------------------------
    # BaseGateway
    # ------------------------------------------------------------------

    def subscribe_to_messages(
        self,
        conversation_id: str,
        on_snapshot: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        unsubscribe = self._listen(self._message_listeners, conversation_id, on_snapshot)
        if conversation_id in self.messages:
            on_snapshot([replace(m) for m in self.messages[conversation_id]])
        return unsubscribe

    async def send_message(self, conversation_id: str, message: Message) -> str:
        message_id = uuid4().hex
        stored = replace(
            message,
            id=message_id,
            conversation_id=conversation_id,
            status=MessageStatus.SENT,
            local_uri=None,
            is_offline_queued=False,
        )
        self.messages.setdefault(conversation_id, []).append(stored)
        self._touch_conversation(conversation_id, stored, sender=message.sender)
        logger.debug("memory gateway stored %s in %s", message_id, conversation_id)
        self._emit_messages(conversation_id)
        return message_id

    def _touch_conversation(self, conversation_id: str, message: Message, sender: str):
        for user_id, conversations in self.conversations.items():
            changed = False
            for i, conv in enumerate(conversations):
                if conv.id != conversation_id:
                    continue
                unread = conv.unread_count + (1 if user_id != sender else 0)
                conversations[i] = replace(
                    conv,
                    last_message=LastMessage(text=message.text, timestamp=message.timestamp, read=False),
                    unread_count=unread,
                )
                changed = True
            if changed:
                conversations.sort(key=lambda c: c.last_message.timestamp, reverse=True)
                self._emit_conversations(user_id)

    async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> None:
        messages = self.messages.get(conversation_id, [])
        self.messages[conversation_id] = [
            replace(m, read=True, status=MessageStatus.READ) if m.sender != user_id and not m.read else m
            for m in messages
        ]
        for i, conv in enumerate(self.conversations.get(user_id, [])):
            if conv.id == conversation_id:
                self.conversations[user_id][i] = replace(
                    conv,
                    unread_count=0,
                    last_message=replace(conv.last_message, read=True),
                )
                self._emit_conversations(user_id)
        self._emit_messages(conversation_id)

    async def upload_media(self, local_uri: str, conversation_id: str, temp_id: str) -> str:
        url = f"memory://media/{conversation_id}/{temp_id}"
        self.media[url] = local_uri
        return url

    def subscribe_to_conversations(
        self,
        user_id: str,
        on_snapshot: ConversationsCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        unsubscribe = self._listen(self._conversation_listeners, user_id, on_snapshot)
        if user_id in self.conversations:
            on_snapshot([replace(c) for c in self.conversations[user_id]])
        return unsubscribe

    async def update_typing_status(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        self.typing.setdefault(conversation_id, {})[user_id] = TypingIndicator(
            user_id=user_id,
            conversation_id=conversation_id,
            timestamp=utcnow_iso(),
            is_typing=is_typing,
        )
        self._emit_typing(conversation_id)

    def subscribe_to_typing(
        self,
        conversation_id: str,
        on_snapshot: TypingCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        unsubscribe = self._listen(self._typing_listeners, conversation_id, on_snapshot)
        if conversation_id in self.typing:
            on_snapshot(list(self.typing[conversation_id].values()))
        return unsubscribe
