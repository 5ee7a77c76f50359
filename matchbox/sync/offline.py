"""
Offline queue: messages waiting for connectivity.

Persisted in the same key-value backend as the local cache, under
`offlineMessageQueue`, so queued messages survive a restart. The queue
never sends anything by itself: flush() hands each entry to a replay
coroutine supplied by the caller and keeps whatever fails for next time.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

from matchbox.models import Message
from matchbox.storage.backends import CacheBackend

logger = logging.getLogger(__name__)

QUEUE_KEY = "offlineMessageQueue"

Replay = Callable[[Message], Awaitable[object]]


class OfflineQueue:

    def __init__(self, backend: CacheBackend):
        self.backend = backend

    def pending(self) -> list[Message]:
        try:
            raw = self.backend.get(QUEUE_KEY)
            return [Message.from_dict(m) for m in json.loads(raw)] if raw else []
        except Exception as e:
            logger.warning("Offline queue unreadable, starting empty: %s", e)
            return []

    def _store(self, messages: list[Message]):
        if messages:
            self.backend.set(QUEUE_KEY, json.dumps([m.to_dict() for m in messages], ensure_ascii=False))
        else:
            self.backend.delete(QUEUE_KEY)

    def enqueue(self, message: Message):
        """Add a message (keyed by its id; re-queuing the same id replaces it)."""
        queued = [m for m in self.pending() if m.id != message.id]
        queued.append(message)
        self._store(queued)
        logger.info("Queued message %s for %s (%d waiting)", message.id, message.conversation_id, len(queued))

    def remove(self, message_id: str) -> bool:
        """Drop the entry for `message_id`. False if it wasn't queued."""
        queued = self.pending()
        kept = [m for m in queued if m.id != message_id]
        if len(kept) == len(queued):
            return False
        self._store(kept)
        logger.info("Dequeued message %s (%d waiting)", message_id, len(kept))
        return True

    def clear(self):
        self.backend.delete(QUEUE_KEY)

    def __len__(self) -> int:
        return len(self.pending())

    async def flush(self, replay: Replay) -> int:
        """
        Replay every queued message in order. Returns how many went through;
        the rest stay queued.
        """
        queued = self.pending()
        if not queued:
            return 0
        self.clear()

        failed: list[Message] = []
        for message in queued:
            try:
                await replay(message)
            except Exception as e:
                logger.error("Queued message %s still failing: %s", message.id, e)
                failed.append(message)

        if failed:
            # Anything queued while we were replaying goes after the leftovers
            newer = [m for m in self.pending() if m.id not in {f.id for f in failed}]
            self._store(failed + newer)
        sent = len(queued) - len(failed)
        logger.info("Offline queue flushed: %d sent, %d still waiting", sent, len(failed))
        return sent
