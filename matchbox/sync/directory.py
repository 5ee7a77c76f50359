"""
Conversation directory: the inbox.

Holds the list of conversation summaries for the signed-in user, fed by one
directory-level live subscription (full replace on every update), plus the
"focused" conversation and per-conversation typing indicators.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone

from matchbox.gateway.base import BaseGateway, SubscriptionError
from matchbox.models import Conversation, TypingIndicator, parse_timestamp
from matchbox.storage.local_cache import LocalCache
from matchbox.sync.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

# Feed keys start with "@" so they never collide with conversation ids
DIRECTORY_KEY = "@inbox"
TYPING_PREFIX = "@typing:"


def typing_key(conversation_id: str) -> str:
    return f"{TYPING_PREFIX}{conversation_id}"


class ConversationDirectory:

    def __init__(
        self,
        cache: LocalCache,
        subscriptions: SubscriptionManager,
        gateway: BaseGateway,
        typing_throttle_seconds: float = 2.0,
        typing_stale_after_seconds: float = 10.0,
    ):
        self.cache = cache
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.typing_throttle_seconds = typing_throttle_seconds
        self.typing_stale_after_seconds = typing_stale_after_seconds

        self.conversations: list[Conversation] = []
        self.current_conversation: Conversation | None = None
        self.typing_users: dict[str, list[str]] = {}
        self.is_loading_conversations = False
        self.error: str | None = None
        self._last_typing_update: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Inbox feed
    # ------------------------------------------------------------------

    def fetch_conversations(self, user_id: str):
        """
        Paint the cached inbox, then open the directory feed.
        Raises SubscriptionError if the feed can't be opened; the cached
        list stays in place.
        """
        self.is_loading_conversations = True
        self.error = None

        cached = self.cache.load_conversations()
        if cached:
            self.conversations = cached

        try:
            self.subscriptions.open(
                DIRECTORY_KEY,
                lambda deliver, fail: self.gateway.subscribe_to_conversations(user_id, deliver, fail),
                self._apply_snapshot,
                self._feed_failed,
            )
        except SubscriptionError as e:
            self.is_loading_conversations = False
            self.error = "Failed to connect to chat service. Showing saved conversations."
            logger.error("Inbox feed for %s unavailable: %s", user_id, e)
            raise

    def _apply_snapshot(self, snapshot: list[Conversation]):
        known = {c.id: c for c in self.conversations}
        merged = []
        for conv in snapshot:
            previous = known.get(conv.id)
            if previous is not None and _is_older(conv.last_message.timestamp, previous.last_message.timestamp):
                # Never move a conversation's last message backwards in time
                conv = replace(conv, last_message=previous.last_message)
            merged.append(conv)

        self.conversations = merged
        self.is_loading_conversations = False
        self.error = None
        if self.current_conversation is not None:
            self.current_conversation = self.get(self.current_conversation.id) or self.current_conversation
        self.cache.save_conversations(merged)

    def _feed_failed(self, error: Exception):
        self.is_loading_conversations = False
        if "index" in str(error).lower():
            self.error = "The backend is missing an index for the inbox query. Showing saved conversations."
        else:
            self.error = "Failed to load conversations. Please try again later."

    def get(self, conversation_id: str) -> Conversation | None:
        for conv in self.conversations:
            if conv.id == conversation_id:
                return conv
        return None

    # ------------------------------------------------------------------
    # Focus & read state
    # ------------------------------------------------------------------

    def set_current_conversation(self, conversation: Conversation | None):
        """Focus a conversation (None on screen exit, so nothing gets read by accident)."""
        self.current_conversation = conversation

    def mark_conversation_read(self, conversation_id: str):
        """Explicit mark-as-read: zero the unread count, flag the last message read."""
        for i, conv in enumerate(self.conversations):
            if conv.id == conversation_id:
                self.conversations[i] = replace(
                    conv,
                    unread_count=0,
                    last_message=replace(conv.last_message, read=True),
                )
                if self.current_conversation is not None and self.current_conversation.id == conversation_id:
                    self.current_conversation = self.conversations[i]
                return

    # ------------------------------------------------------------------
    # Typing indicators
    # ------------------------------------------------------------------

    async def update_typing_status(self, conversation_id: str, user_id: str, is_typing: bool):
        """Tell the backend we're typing, at most once per throttle window."""
        now = time.monotonic()
        last = self._last_typing_update.get(conversation_id)
        if last is not None and now - last < self.typing_throttle_seconds:
            return
        self._last_typing_update[conversation_id] = now
        try:
            await self.gateway.update_typing_status(conversation_id, user_id, is_typing)
        except Exception as e:
            logger.error("Error updating typing status in %s: %s", conversation_id, e)

    def watch_typing(self, conversation_id: str, current_user_id: str):
        """Keep typing_users[conversation_id] current (everyone but us)."""
        self.subscriptions.open(
            typing_key(conversation_id),
            lambda deliver, fail: self.gateway.subscribe_to_typing(conversation_id, deliver, fail),
            lambda indicators: self._apply_typing(conversation_id, current_user_id, indicators),
            lambda error: logger.warning("Typing feed for %s stopped: %s", conversation_id, error),
        )

    def _apply_typing(self, conversation_id: str, current_user_id: str, indicators: list[TypingIndicator]):
        now = datetime.now(timezone.utc)
        typing = []
        for ind in indicators:
            if ind.user_id == current_user_id or not ind.is_typing:
                continue
            stamp = parse_timestamp(ind.timestamp)
            if stamp is not None and (now - stamp).total_seconds() > self.typing_stale_after_seconds:
                continue
            typing.append(ind.user_id)
        self.typing_users[conversation_id] = typing

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def cleanup_subscribers(self, conversation_id: str | None = None):
        """
        Close the typing feed for one conversation, or close every feed this
        directory owns (inbox + all typing feeds) when called without one.
        """
        if conversation_id is not None:
            self.subscriptions.unsubscribe(typing_key(conversation_id))
            self.typing_users.pop(conversation_id, None)
            return

        self.subscriptions.unsubscribe(DIRECTORY_KEY)
        for key in self.subscriptions.keys():
            if key.startswith(TYPING_PREFIX):
                self.subscriptions.unsubscribe(key)
        self.typing_users.clear()

    def reset(self):
        """Forget everything (logout)."""
        self.cleanup_subscribers()
        self.conversations = []
        self.current_conversation = None
        self.is_loading_conversations = False
        self.error = None
        self._last_typing_update.clear()
        self.cache.clear_conversations()


def _is_older(candidate: str, reference: str) -> bool:
    a, b = parse_timestamp(candidate), parse_timestamp(reference)
    if a is None or b is None:
        return False
    return a < b
