"""
REST gateway over httpx.

Talks to any backend exposing:
    GET  /conversations/{cid}/messages           -> {"messages": [...]}
    POST /conversations/{cid}/messages           -> {"id": "..."}
    POST /conversations/{cid}/read               {"userId": ...}
    POST /conversations/{cid}/media              multipart "file" -> {"url": "..."}
    GET  /users/{uid}/conversations              -> {"conversations": [...]}
    PUT  /conversations/{cid}/typing/{uid}       {"isTyping": ...}
    GET  /conversations/{cid}/typing             -> {"indicators": [...]}
    GET  /health

Live feeds are polled: each subscription runs one task on the running event
loop and only emits when the payload changed. A failed poll is reported once
to on_error and ends the feed; reopening it is the caller's decision.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

import httpx

from matchbox.gateway.base import (
    BaseGateway,
    ConversationsCallback,
    ErrorCallback,
    GatewayError,
    MessagesCallback,
    SubscriptionError,
    TypingCallback,
    Unsubscribe,
)
from matchbox.models import Conversation, Message, TypingIndicator

logger = logging.getLogger(__name__)


class _PollingFeed:
    """One polled live feed. stop() guarantees no further callbacks."""

    def __init__(
        self,
        gateway: HttpGateway,
        path: str,
        parse: Callable[[dict], list],
        on_snapshot: Callable[[list], None],
        on_error: ErrorCallback | None,
    ):
        self.gateway = gateway
        self.path = path
        self.parse = parse
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self._stopped = False
        self._task: asyncio.Task | None = None

    def start(self) -> Unsubscribe:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise SubscriptionError(f"Cannot watch {self.path}: no running event loop") from e
        self._task = loop.create_task(self._run())
        self._task.add_done_callback(self._collect)
        return self.stop

    def stop(self):
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _collect(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Live feed %s on '%s' crashed: %s", self.path, self.gateway.name, error)

    async def _run(self):
        last_payload: Any = None
        async with httpx.AsyncClient(timeout=self.gateway.timeout) as client:
            while not self._stopped:
                try:
                    resp = await client.get(
                        f"{self.gateway.url}{self.path}",
                        headers=self.gateway._headers(),
                    )
                    if resp.status_code >= 400:
                        raise GatewayError(
                            f"HTTP {resp.status_code}: {resp.text[:200]}",
                            status_code=resp.status_code,
                        )
                    payload = resp.json()
                    if self._stopped:
                        return
                    if payload != last_payload:
                        if not isinstance(payload, dict):
                            raise GatewayError(f"Unexpected {type(payload).__name__} body from {self.path}")
                        snapshot = self.parse(payload)
                        last_payload = payload
                        self.on_snapshot(snapshot)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning("Live feed %s on '%s' failed: %s", self.path, self.gateway.name, e)
                    if not self._stopped and self.on_error is not None:
                        self.on_error(e)
                    return

                await asyncio.sleep(self.gateway.poll_interval)


class HttpGateway(BaseGateway):
    """
    Gateway for a REST backend.
    Every write is one request; every feed is one polling task.
    """

    def __init__(
        self,
        url: str,
        name: str = "http",
        api_key: str = "",
        timeout: float = 15,
        poll_interval: float = 2.0,
        **_,
    ):
        if not url:
            raise ValueError("HttpGateway requires a url (gateway.url)")
        self.name = name
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.poll_interval = poll_interval

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """One request; non-2xx and transport failures become GatewayError."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    f"{self.url}{path}",
                    headers=self._headers(),
                    **kwargs,
                )
        except httpx.TimeoutException as e:
            logger.warning("Gateway '%s' timed out on %s %s", self.name, method, path)
            raise GatewayError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Gateway '%s' failed on %s %s: %s", self.name, method, path, e)
            raise GatewayError(str(e)) from e

        if resp.status_code >= 400:
            raise GatewayError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        return resp.json()

    def _watch(self, path, parse, on_snapshot, on_error) -> Unsubscribe:
        return _PollingFeed(self, path, parse, on_snapshot, on_error).start()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def subscribe_to_messages(
        self,
        conversation_id: str,
        on_snapshot: MessagesCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        return self._watch(
            f"/conversations/{conversation_id}/messages",
            lambda data: [Message.from_dict(m) for m in data.get("messages", [])],
            on_snapshot,
            on_error,
        )

    async def send_message(self, conversation_id: str, message: Message) -> str:
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json=message.to_draft(),
        )
        message_id = data.get("id")
        if not message_id:
            raise GatewayError("Backend accepted the message but returned no id")
        return str(message_id)

    async def mark_messages_as_read(self, conversation_id: str, user_id: str) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/read", json={"userId": user_id})

    async def upload_media(self, local_uri: str, conversation_id: str, temp_id: str) -> str:
        path = Path(local_uri.removeprefix("file://"))
        try:
            content = path.read_bytes()
        except OSError as e:
            raise GatewayError(f"Cannot read media {local_uri}: {e}") from e

        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/media",
            files={"file": (path.name, content)},
            data={"tempId": temp_id},
        )
        url = data.get("url")
        if not url:
            raise GatewayError("Upload finished but the backend returned no url")
        return url

    # ------------------------------------------------------------------
    # Inbox & typing
    # ------------------------------------------------------------------

    def subscribe_to_conversations(
        self,
        user_id: str,
        on_snapshot: ConversationsCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        return self._watch(
            f"/users/{user_id}/conversations",
            lambda data: [Conversation.from_dict(c) for c in data.get("conversations", [])],
            on_snapshot,
            on_error,
        )

    async def update_typing_status(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        await self._request(
            "PUT",
            f"/conversations/{conversation_id}/typing/{user_id}",
            json={"isTyping": is_typing},
        )

    def subscribe_to_typing(
        self,
        conversation_id: str,
        on_snapshot: TypingCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        return self._watch(
            f"/conversations/{conversation_id}/typing",
            lambda data: [TypingIndicator.from_dict(t) for t in data.get("indicators", [])],
            on_snapshot,
            on_error,
        )

    async def health_check(self) -> bool:
        """Check the backend is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/health", headers=self._headers())
                return resp.status_code == 200
        except Exception:
            return False
