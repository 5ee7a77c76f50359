"""
LocalCache: last known message list per conversation, on the device.

Read before any network round-trip so a conversation paints instantly.
Caching is a best-effort optimization: nothing in here raises. A corrupt
or missing entry reads as empty, a failed write is logged and dropped.

Key layout (values are JSON):
    messages_<conversationId>   ordered list of messages
    conversations               inbox summaries
"""

import json
import logging

from matchbox.models import Conversation, Message
from matchbox.storage.backends import CacheBackend

logger = logging.getLogger(__name__)

MESSAGES_PREFIX = "messages_"
CONVERSATIONS_KEY = "conversations"


def messages_key(conversation_id: str) -> str:
    return f"{MESSAGES_PREFIX}{conversation_id}"


class LocalCache:
    """JSON (de)serialization and error policy over a CacheBackend."""

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def load(self, conversation_id: str) -> list[Message]:
        """Cached messages for a conversation, or [] if there are none."""
        key = messages_key(conversation_id)
        try:
            raw = self.backend.get(key)
            if not raw:
                return []
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError(f"expected a list, got {type(data).__name__}")
            return [Message.from_dict(m) for m in data]
        except Exception as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, e)
            return []

    def save(self, conversation_id: str, messages: list[Message]):
        """Persist a conversation's messages. Failures are logged, not raised."""
        key = messages_key(conversation_id)
        try:
            payload = json.dumps([m.to_dict() for m in messages], ensure_ascii=False)
            self.backend.set(key, payload)
            logger.debug("Cached %d messages under %s", len(messages), key)
        except Exception as e:
            logger.error("Error caching messages for %s: %s", conversation_id, e)

    def clear(self, conversation_id: str | None = None):
        """Remove one conversation's entry, or every messages_* entry."""
        try:
            if conversation_id is not None:
                self.backend.delete(messages_key(conversation_id))
            else:
                keys = self.backend.keys(MESSAGES_PREFIX)
                self.backend.delete(*keys)
                logger.info("Cleared %d cached conversations", len(keys))
        except Exception as e:
            logger.error("Error clearing message cache: %s", e)

    def conversation_ids(self) -> list[str]:
        """Ids of every conversation that has cached messages."""
        try:
            return [k[len(MESSAGES_PREFIX):] for k in self.backend.keys(MESSAGES_PREFIX)]
        except Exception as e:
            logger.warning("Could not list cached conversations: %s", e)
            return []

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def load_conversations(self) -> list[Conversation]:
        try:
            raw = self.backend.get(CONVERSATIONS_KEY)
            if not raw:
                return []
            return [Conversation.from_dict(c) for c in json.loads(raw)]
        except Exception as e:
            logger.warning("Ignoring unreadable conversation cache: %s", e)
            return []

    def save_conversations(self, conversations: list[Conversation]):
        try:
            payload = json.dumps([c.to_dict() for c in conversations], ensure_ascii=False)
            self.backend.set(CONVERSATIONS_KEY, payload)
        except Exception as e:
            logger.error("Error caching conversations: %s", e)

    def clear_conversations(self):
        try:
            self.backend.delete(CONVERSATIONS_KEY)
        except Exception as e:
            logger.error("Error clearing conversation cache: %s", e)
