"""
Message store: the UI-facing view of every open conversation.

Merges three sources into one ordered sequence per conversation:
  1. the local cache (painted first, before the network answers)
  2. optimistic placeholders for sends that are still in flight or failed
  3. full snapshots from the live feed

Per-message lifecycle (see matchbox.models.TRANSITIONS):

    (none)    -> sending     optimistic send
    sending   -> sent        backend ack, placeholder replaced in place
    sending   -> failed      backend error, placeholder stays visible
    failed    -> sending     explicit retry only
    (none)    -> uploading   media placeholder
    uploading -> sent        upload then send succeeded
    uploading -> failed      upload or send failed

Order is whatever the gateway delivers; nothing here re-sorts.
Nothing here retries on its own either.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from matchbox.gateway.base import BaseGateway, SubscriptionError
from matchbox.models import (
    Message,
    MessageStatus,
    MessageType,
    new_temp_id,
    utcnow_iso,
)
from matchbox.storage.local_cache import LocalCache
from matchbox.sync.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

MEDIA_LABELS = {
    MessageType.IMAGE: "📷 Photo",
    MessageType.GIF: "🖼️ GIF",
    MessageType.STICKER: "Sticker",
}


class MessageStore:
    """
    Authoritative in-memory message state for one user session.

    Public state (read it, don't write it):
        messages[cid]             ordered list[Message]
        is_loading_messages[cid]  True until cache or first snapshot lands
        sending_messages[cid]     True while any send/upload is in flight
        errors[cid]               last live-feed error, cleared by a snapshot
        confirmed_ids[temp_id]    server id of every accepted send
    """

    def __init__(
        self,
        cache: LocalCache,
        subscriptions: SubscriptionManager,
        gateway: BaseGateway,
        wiretap=None,
    ):
        self.cache = cache
        self.subscriptions = subscriptions
        self.gateway = gateway
        self.wiretap = wiretap

        self.messages: dict[str, list[Message]] = {}
        self.is_loading_messages: dict[str, bool] = {}
        self.sending_messages: dict[str, bool] = {}
        self.errors: dict[str, str] = {}
        self._inflight: dict[str, int] = {}
        # temp id -> server id for every send the backend accepted
        self.confirmed_ids: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    def fetch_messages(self, conversation_id: str):
        """
        Paint from the cache, then open (or reopen) the live feed.

        Raises SubscriptionError if the feed can't be opened. Cached state is
        kept in that case, so the conversation stays readable (stale).
        """
        self.is_loading_messages[conversation_id] = True
        self.errors.pop(conversation_id, None)

        cached = self.cache.load(conversation_id)
        if cached:
            self.messages[conversation_id] = self._with_pending(conversation_id, cached)
            self.is_loading_messages[conversation_id] = False
            logger.debug("Painted %d cached messages for %s", len(cached), conversation_id)

        try:
            self.subscriptions.subscribe(
                conversation_id,
                lambda snapshot: self._apply_snapshot(conversation_id, snapshot),
                lambda error: self._feed_failed(conversation_id, error),
            )
        except SubscriptionError as e:
            self.is_loading_messages[conversation_id] = False
            self.errors[conversation_id] = str(e)
            self._tap("error", "subscribe_failed", conversation_id, content=str(e))
            raise

    def _with_pending(self, conversation_id: str, confirmed: list[Message]) -> list[Message]:
        """`confirmed` followed by local placeholders it doesn't already contain."""
        server_ids = {m.id for m in confirmed}
        pending = [
            m for m in self.messages.get(conversation_id, [])
            if m.is_pending and m.id not in server_ids
        ]
        return list(confirmed) + pending

    def _apply_snapshot(self, conversation_id: str, snapshot: list[Message]):
        self.messages[conversation_id] = self._with_pending(conversation_id, snapshot)
        self.is_loading_messages[conversation_id] = False
        self.errors.pop(conversation_id, None)
        self.cache.save(conversation_id, snapshot)
        self._tap("inbound", "snapshot", conversation_id, count=len(snapshot))

    def _feed_failed(self, conversation_id: str, error: Exception):
        self.is_loading_messages[conversation_id] = False
        self.errors[conversation_id] = str(error)
        self._tap("error", "feed_failed", conversation_id, content=str(error))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, draft: Message) -> Message | None:
        """
        Append a `sending` placeholder now, then persist through the gateway.

        A draft carrying an unused temp id keeps it, so callers can track
        the placeholder; anything else gets a fresh one.

        Returns the confirmed message (None if the conversation was cleared
        meanwhile). On failure the placeholder turns `failed` and the
        gateway's exception propagates.
        """
        reuse = draft.is_temporary and self.find(draft.conversation_id, draft.id) is None
        placeholder = replace(
            draft,
            id=draft.id if reuse else new_temp_id(),
            status=MessageStatus.SENDING,
            timestamp=utcnow_iso(),
            read=False,
            is_offline_queued=False,
        )
        self.messages.setdefault(draft.conversation_id, []).append(placeholder)
        return await self._deliver(placeholder)

    async def upload_and_send_media_message(
        self,
        local_uri: str,
        conversation_id: str,
        sender: str,
        media_type: MessageType | str,
    ) -> Message | None:
        """Upload a device file, then send a message pointing at its URL."""
        media_type = MessageType(media_type)
        if media_type is MessageType.TEXT:
            raise ValueError("media messages need a media type, not 'text'")

        placeholder = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            sender=sender,
            text=MEDIA_LABELS[media_type],
            status=MessageStatus.UPLOADING,
            type=media_type,
            local_uri=local_uri,
        )
        self.messages.setdefault(conversation_id, []).append(placeholder)
        return await self._deliver(placeholder)

    async def retry_message(self, conversation_id: str, message_id: str) -> Message | None:
        """
        Explicit retry of a failed message, keeping its place in the list.
        Media that never finished uploading goes back through the upload.
        """
        current = self.find(conversation_id, message_id)
        if current is None:
            raise KeyError(f"No message {message_id} in conversation {conversation_id}")

        needs_upload = current.type is not MessageType.TEXT and not current.media_url and bool(current.local_uri)
        target = MessageStatus.UPLOADING if needs_upload else MessageStatus.SENDING
        retried = current.transition(
            target,
            retry_count=current.retry_count + 1,
            is_offline_queued=False,
        )
        self._put(conversation_id, message_id, retried)
        logger.info("Retrying %s in %s (attempt %d)", message_id, conversation_id, retried.retry_count)
        return await self._deliver(retried)

    async def _deliver(self, placeholder: Message) -> Message | None:
        """Upload (if needed) and send a placeholder that's already in the list."""
        conversation_id = placeholder.conversation_id
        temp_id = placeholder.id
        self._begin_send(conversation_id)
        self._tap("outbound", placeholder.status.value, conversation_id, temp_id, content=placeholder.text)
        try:
            outgoing = placeholder
            if placeholder.status is MessageStatus.UPLOADING:
                url = await self.gateway.upload_media(placeholder.local_uri, conversation_id, temp_id)
                outgoing = replace(placeholder, media_url=url, local_uri=None)
                self._update(conversation_id, temp_id, lambda m: replace(m, media_url=url))
            server_id = await self.gateway.send_message(conversation_id, outgoing)
        except (Exception, asyncio.CancelledError) as e:
            logger.error("Error sending message %s in %s: %s", temp_id, conversation_id, e)
            self._update(conversation_id, temp_id, lambda m: m.transition(MessageStatus.FAILED))
            self._tap("error", "send_failed", conversation_id, temp_id, content=str(e))
            raise
        finally:
            self._end_send(conversation_id)

        self.confirmed_ids[temp_id] = server_id
        confirmed = self._confirm(conversation_id, temp_id, server_id, local_uri=None)
        self._tap("outbound", "sent", conversation_id, server_id, content=placeholder.text)
        return confirmed

    def _confirm(self, conversation_id: str, temp_id: str, server_id: str, **changes) -> Message | None:
        """Swap a placeholder for the confirmed message at the same index."""
        sequence = self.messages.get(conversation_id)
        if sequence is None:
            return None
        index = self._index(sequence, temp_id)
        if index is None:
            return None
        for message in sequence:
            if message.id == server_id:
                # The live feed got there first; drop the duplicate placeholder
                del sequence[index]
                return message
        sequence[index] = sequence[index].transition(MessageStatus.SENT, id=server_id, **changes)
        return sequence[index]

    def _begin_send(self, conversation_id: str):
        self._inflight[conversation_id] = self._inflight.get(conversation_id, 0) + 1
        self.sending_messages[conversation_id] = True

    def _end_send(self, conversation_id: str):
        if conversation_id not in self._inflight:
            return  # cleared mid-flight
        remaining = self._inflight[conversation_id] - 1
        if remaining <= 0:
            del self._inflight[conversation_id]
            self.sending_messages[conversation_id] = False
        else:
            self._inflight[conversation_id] = remaining

    # ------------------------------------------------------------------
    # Read state & flags
    # ------------------------------------------------------------------

    async def mark_messages_as_read(self, conversation_id: str, user_id: str):
        """Mark the other side's messages read, remotely then locally."""
        try:
            await self.gateway.mark_messages_as_read(conversation_id, user_id)
        except Exception as e:
            logger.error("Error marking messages as read in %s: %s", conversation_id, e)
            raise

        sequence = self.messages.get(conversation_id)
        if sequence is None:
            return
        self.messages[conversation_id] = [
            replace(m, read=True) if m.sender != user_id and not m.read else m
            for m in sequence
        ]

    def flag_offline_queued(self, conversation_id: str, message_id: str):
        """Mark a failed placeholder as waiting in the offline queue."""
        self._update(conversation_id, message_id, lambda m: replace(m, is_offline_queued=True))

    # ------------------------------------------------------------------
    # Lookup & teardown
    # ------------------------------------------------------------------

    def find(self, conversation_id: str, message_id: str) -> Message | None:
        sequence = self.messages.get(conversation_id, [])
        index = self._index(sequence, message_id)
        return sequence[index] if index is not None else None

    def cleanup_message_subscription(self, conversation_id: str):
        self.subscriptions.unsubscribe(conversation_id)

    def clear_messages(self, conversation_id: str | None = None):
        """Drop in-memory state and cache for one conversation, or for all."""
        if conversation_id is not None:
            for state in (self.messages, self.is_loading_messages, self.sending_messages, self.errors, self._inflight):
                state.pop(conversation_id, None)
            self.cache.clear(conversation_id)
            return

        for state in (self.messages, self.is_loading_messages, self.sending_messages, self.errors, self._inflight):
            state.clear()
        self.confirmed_ids.clear()
        self.cache.clear()

    @staticmethod
    def _index(sequence: list[Message], message_id: str) -> int | None:
        for i, message in enumerate(sequence):
            if message.id == message_id:
                return i
        return None

    def _put(self, conversation_id: str, message_id: str, message: Message):
        sequence = self.messages.get(conversation_id, [])
        index = self._index(sequence, message_id)
        if index is not None:
            sequence[index] = message

    def _update(self, conversation_id: str, message_id: str, change):
        """Apply `change` to one message in place; quietly skip if it's gone."""
        sequence = self.messages.get(conversation_id)
        if sequence is None:
            return
        index = self._index(sequence, message_id)
        if index is not None:
            sequence[index] = change(sequence[index])

    def _tap(self, direction: str, event: str, conversation_id: str, message_id: str = "", **kwargs):
        if self.wiretap is not None:
            self.wiretap.log(direction, event, conversation_id, message_id=message_id, **kwargs)
