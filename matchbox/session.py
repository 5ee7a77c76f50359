"""
ChatSession: everything one signed-in user needs, wired together.

Built once per login and passed around by reference; there are no module
globals. logout() tears every live feed down and wipes the user's data from
memory and from the device.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from matchbox.config import get_config
from matchbox.gateway import BaseGateway, GatewayError, SubscriptionError, make_gateway
from matchbox.models import Conversation, Message, MessageStatus, MessageType, new_temp_id
from matchbox.storage import CacheBackend, LocalCache, make_backend
from matchbox.sync.directory import ConversationDirectory
from matchbox.sync.message_store import MessageStore
from matchbox.sync.offline import OfflineQueue
from matchbox.sync.subscriptions import SubscriptionManager
from matchbox.wiretap import WireLog

logger = logging.getLogger(__name__)


class ChatSession:

    def __init__(
        self,
        user_id: str,
        cache_backend: CacheBackend,
        gateway: BaseGateway,
        wiretap: WireLog | None = None,
        offline_queue: bool = True,
        typing_throttle_seconds: float = 2.0,
        typing_stale_after_seconds: float = 10.0,
    ):
        self.user_id = user_id
        self.gateway = gateway
        self.wiretap = wiretap
        self.cache = LocalCache(cache_backend)
        self.subscriptions = SubscriptionManager(gateway)
        self.messages = MessageStore(self.cache, self.subscriptions, gateway, wiretap=wiretap)
        self.directory = ConversationDirectory(
            self.cache,
            self.subscriptions,
            gateway,
            typing_throttle_seconds=typing_throttle_seconds,
            typing_stale_after_seconds=typing_stale_after_seconds,
        )
        self.offline_queue = OfflineQueue(cache_backend) if offline_queue else None
        self.is_connected = True

    @classmethod
    def from_config(cls, user_id: str, cfg: dict | None = None) -> ChatSession:
        cfg = cfg or get_config()
        cache_cfg = cfg.get("cache", {})
        backend = make_backend(cache_cfg.get("backend", "sqlite"), path=cache_cfg.get("path", "./data/cache.db"))
        gateway = make_gateway(cfg.get("gateway", {}))

        wire_cfg = cfg.get("wiretap", {})
        wiretap = WireLog(wire_cfg.get("path", "./data/wire.jsonl")) if wire_cfg.get("enabled") else None

        typing_cfg = cfg.get("typing", {})
        session = cls(
            user_id,
            backend,
            gateway,
            wiretap=wiretap,
            offline_queue=cfg.get("offline_queue", {}).get("enabled", True),
            typing_throttle_seconds=typing_cfg.get("throttle_seconds", 2.0),
            typing_stale_after_seconds=typing_cfg.get("stale_after_seconds", 10.0),
        )
        logger.info(
            "Session for %s ready (cache=%s, gateway=%r, wiretap=%s)",
            user_id,
            type(backend).__name__,
            gateway,
            "on" if wiretap else "off",
        )
        return session

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Open the inbox. False means it's showing cached data only."""
        try:
            self.directory.fetch_conversations(self.user_id)
            return True
        except SubscriptionError:
            return False

    def open_conversation(self, conversation: Conversation) -> bool:
        """
        Focus a conversation and start its message and typing feeds.
        False means the view is running from the cache (stale) for now.
        """
        self.directory.set_current_conversation(conversation)
        live = True
        try:
            self.messages.fetch_messages(conversation.id)
        except SubscriptionError as e:
            logger.warning("Conversation %s is cache-only: %s", conversation.id, e)
            live = False
        try:
            self.directory.watch_typing(conversation.id, self.user_id)
        except SubscriptionError as e:
            logger.warning("No typing indicators for %s: %s", conversation.id, e)
        return live

    def close_conversation(self, conversation_id: str):
        self.messages.cleanup_message_subscription(conversation_id)
        self.directory.cleanup_subscribers(conversation_id)
        current = self.directory.current_conversation
        if current is not None and current.id == conversation_id:
            self.directory.set_current_conversation(None)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, draft: Message) -> Message | None:
        """
        Send through the store. When the gateway fails and the offline queue
        is on, the failed placeholder is queued and flagged before the error
        propagates.
        """
        draft = replace(draft, id=new_temp_id())
        try:
            return await self.messages.send_message(draft)
        except GatewayError:
            self._queue(draft.conversation_id, draft.id, draft)
            raise

    async def send_text(self, conversation_id: str, text: str) -> Message | None:
        return await self.send_message(Message(conversation_id=conversation_id, sender=self.user_id, text=text))

    async def send_media(self, local_uri: str, conversation_id: str, media_type: MessageType | str) -> Message | None:
        return await self.messages.upload_and_send_media_message(local_uri, conversation_id, self.user_id, media_type)

    async def retry(self, conversation_id: str, message_id: str) -> Message | None:
        """
        Explicit retry. A queued message that goes through leaves the queue,
        so the next reconnect doesn't post it again; one that fails again
        stays queued.
        """
        was_queued = self.offline_queue is not None and any(
            m.id == message_id for m in self.offline_queue.pending()
        )
        try:
            sent = await self.messages.retry_message(conversation_id, message_id)
        except GatewayError:
            if was_queued:
                self._queue(conversation_id, message_id, None)
            raise
        if was_queued:
            self.offline_queue.remove(message_id)
        return sent

    def _queue(self, conversation_id: str, message_id: str, fallback: Message | None):
        if self.offline_queue is None:
            return
        failed = self.messages.find(conversation_id, message_id)
        if failed is None or failed.status is not MessageStatus.FAILED:
            failed = fallback
        if failed is None:
            return
        self.offline_queue.enqueue(replace(failed, is_offline_queued=True))
        self.messages.flag_offline_queued(conversation_id, message_id)

    async def _replay(self, queued: Message):
        """Resend a queued message, reusing its placeholder when it's still on screen."""
        if queued.id in self.messages.confirmed_ids:
            logger.info("Queued message %s already went through as %s", queued.id, self.messages.confirmed_ids[queued.id])
            return
        placeholder = self.messages.find(queued.conversation_id, queued.id)
        if placeholder is not None and placeholder.status in (MessageStatus.SENDING, MessageStatus.UPLOADING):
            # A retry is already in flight
            return
        try:
            if placeholder is not None and placeholder.status is MessageStatus.FAILED:
                await self.messages.retry_message(queued.conversation_id, queued.id)
            else:
                await self.messages.send_message(replace(queued, is_offline_queued=False))
        except Exception:
            self.messages.flag_offline_queued(queued.conversation_id, queued.id)
            raise

    async def update_network_status(self, is_connected: bool) -> int:
        """Record connectivity; coming back online flushes the offline queue."""
        was_connected = self.is_connected
        self.is_connected = is_connected
        if is_connected and not was_connected and self.offline_queue is not None:
            logger.info("Back online, replaying queued messages")
            return await self.offline_queue.flush(self._replay)
        return 0

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_as_read(self, conversation_id: str):
        await self.messages.mark_messages_as_read(conversation_id, self.user_id)
        self.directory.mark_conversation_read(conversation_id)

    async def mark_current_as_read(self) -> bool:
        """Mark the focused conversation read. Nothing focused, nothing marked."""
        current = self.directory.current_conversation
        if current is None:
            return False
        await self.mark_as_read(current.id)
        return True

    async def set_typing(self, conversation_id: str, is_typing: bool):
        await self.directory.update_typing_status(conversation_id, self.user_id, is_typing)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on_background(self):
        """App went to the background: stop every live feed."""
        self.subscriptions.unsubscribe_all()

    def close(self):
        self.subscriptions.unsubscribe_all()
        if self.wiretap is not None:
            self.wiretap.close()

    def logout(self):
        """Tear down feeds and wipe this user's messages, inbox and queue."""
        self.subscriptions.unsubscribe_all()
        self.messages.clear_messages()
        self.directory.reset()
        if self.offline_queue is not None:
            self.offline_queue.clear()
        if self.wiretap is not None:
            self.wiretap.close()
        logger.info("Session for %s logged out", self.user_id)

    def __enter__(self) -> ChatSession:
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *exc):
        self.close()
        return False
