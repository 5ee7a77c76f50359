"""
Subscription manager: one live feed per key, never more.

Keys are conversation ids for message feeds; other feeds (the inbox, typing
indicators) use their own keys through open(). Re-subscribing a key closes
the previous handle first.

Every handle carries a generation number that increases per key. Callbacks
are wrapped so anything arriving from a closed or superseded handle is
dropped, even if the gateway delivers it late.
"""

from __future__ import annotations

import logging
from typing import Callable

from matchbox.gateway.base import (
    BaseGateway,
    ErrorCallback,
    MessagesCallback,
    SubscriptionError,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

Opener = Callable[[Callable, ErrorCallback], Unsubscribe]


class Subscription:
    """Handle for one live feed. close() is idempotent."""

    __slots__ = ("key", "generation", "_unsubscribe", "_closed")

    def __init__(self, key: str, generation: int):
        self.key = key
        self.generation = generation
        self._unsubscribe: Unsubscribe | None = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                logger.warning("Unsubscribe for %s (gen %d) raised: %s", self.key, self.generation, e)
            self._unsubscribe = None

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<Subscription key={self.key!r} gen={self.generation} {state}>"


class SubscriptionManager:
    """Owns every live handle for a session."""

    def __init__(self, gateway: BaseGateway):
        self.gateway = gateway
        self._handles: dict[str, Subscription] = {}
        self._generations: dict[str, int] = {}

    def subscribe(
        self,
        conversation_id: str,
        on_update: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Open (or reopen) the message feed for a conversation."""
        return self.open(
            conversation_id,
            lambda deliver, fail: self.gateway.subscribe_to_messages(conversation_id, deliver, fail),
            on_update,
            on_error,
        )

    def open(
        self,
        key: str,
        opener: Opener,
        on_update: Callable,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """
        Open any feed under `key`. `opener(deliver, fail)` must start the
        feed and return its unsubscribe callable.

        Raises SubscriptionError (once, no retry) if the opener fails.
        """
        self.unsubscribe(key)

        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        handle = Subscription(key, generation)
        # Registered before opening: some gateways deliver synchronously.
        self._handles[key] = handle
        error_reported = False

        def is_current() -> bool:
            return handle.active and self._generations.get(key) == generation

        def deliver(payload):
            if not is_current():
                logger.debug("Dropped update for %s from stale gen %d", key, generation)
                return
            on_update(payload)

        def fail(error: Exception):
            nonlocal error_reported
            if error_reported or not is_current():
                return
            error_reported = True
            logger.error("Live feed %s failed: %s", key, error)
            if on_error is not None:
                on_error(error)

        try:
            unsubscribe = opener(deliver, fail)
        except Exception as e:
            handle._closed = True
            if self._handles.get(key) is handle:
                del self._handles[key]
            logger.error("Error subscribing to %s: %s", key, e)
            if isinstance(e, SubscriptionError):
                raise
            raise SubscriptionError(f"Could not open live feed for {key}: {e}") from e

        if not handle.active:
            # Closed by a callback while the feed was still opening
            unsubscribe()
            return handle
        handle._unsubscribe = unsubscribe
        logger.debug("Subscribed %s (gen %d)", key, generation)
        return handle

    def unsubscribe(self, key: str):
        """Tear down the handle for `key`; no-op if there isn't one."""
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.close()
            logger.debug("Unsubscribed %s (gen %d)", key, handle.generation)

    def unsubscribe_all(self):
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.close()
        if handles:
            logger.info("Closed %d live feeds", len(handles))

    def get(self, key: str) -> Subscription | None:
        return self._handles.get(key)

    def is_subscribed(self, key: str) -> bool:
        return key in self._handles

    def keys(self) -> list[str]:
        return list(self._handles)

    @property
    def count(self) -> int:
        return len(self._handles)
