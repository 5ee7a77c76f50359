"""
Tests for the message store: cache-first paint, optimistic sends,
reconciliation with live snapshots, read state and teardown.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from matchbox.gateway import GatewayError, MemoryGateway, SubscriptionError
from matchbox.models import IllegalTransitionError, Message, MessageStatus, MessageType
from matchbox.storage import LocalCache, make_backend
from matchbox.sync.message_store import MessageStore
from matchbox.sync.subscriptions import SubscriptionManager


class GatedGateway(MemoryGateway):
    """Memory gateway whose sends wait until the test opens the gate."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.next_ids: list[str] = []

    async def send_message(self, conversation_id, message):
        await self.gate.wait()
        return self.next_ids.pop(0)


def _msg(mid, text="hey", sender="u2", conversation_id="C1", **kw):
    return Message(id=mid, conversation_id=conversation_id, sender=sender, text=text, status=MessageStatus.SENT, **kw)


def _build(gateway):
    cache = LocalCache(make_backend("memory"))
    store = MessageStore(cache, SubscriptionManager(gateway), gateway)
    return store, cache


@pytest.fixture
def gateway():
    return MemoryGateway()


@pytest.fixture
def store(gateway):
    return _build(gateway)[0]


@pytest.fixture
def quiet_gateway():
    """A gateway whose feeds never answer and whose sends return fixed ids."""
    gw = MagicMock(spec=MemoryGateway)
    gw.subscribe_to_messages.return_value = lambda: None
    gw.send_message = AsyncMock(return_value="m2")
    gw.upload_media = AsyncMock(return_value="https://cdn/img.jpg")
    gw.mark_messages_as_read = AsyncMock(return_value=None)
    return gw


# ---------------------------------------------------------------------------
# Cache-first paint & live snapshots
# ---------------------------------------------------------------------------

def test_cache_first_paint(quiet_gateway):
    store, cache = _build(quiet_gateway)
    cache.save("C1", [_msg("m1")])

    store.fetch_messages("C1")

    assert [m.id for m in store.messages["C1"]] == ["m1"]
    assert store.is_loading_messages["C1"] is False
    quiet_gateway.subscribe_to_messages.assert_called_once()


def test_loading_until_first_snapshot(quiet_gateway):
    store, _ = _build(quiet_gateway)
    store.fetch_messages("C1")
    assert store.is_loading_messages["C1"] is True
    assert "C1" not in store.messages


def test_snapshot_replaces_and_caches(store, gateway):
    store.fetch_messages("C1")
    gateway.push("C1", [_msg("m1"), _msg("m2", text="again")])

    assert [m.id for m in store.messages["C1"]] == ["m1", "m2"]
    assert store.is_loading_messages["C1"] is False
    assert [m.id for m in store.cache.load("C1")] == ["m1", "m2"]

    gateway.push("C1", [_msg("m2", text="again")])
    assert [m.id for m in store.messages["C1"]] == ["m2"]


def test_refetch_keeps_one_listener(store, gateway):
    store.fetch_messages("C1")
    store.fetch_messages("C1")
    assert gateway.listener_count("C1") == 1
    assert store.subscriptions.count == 1


def test_subscription_failure_keeps_cached_state(quiet_gateway):
    store, cache = _build(quiet_gateway)
    cache.save("C1", [_msg("m1")])
    quiet_gateway.subscribe_to_messages.side_effect = RuntimeError("offline")

    with pytest.raises(SubscriptionError):
        store.fetch_messages("C1")

    assert [m.id for m in store.messages["C1"]] == ["m1"]
    assert store.is_loading_messages["C1"] is False
    assert "offline" in store.errors["C1"]


def test_feed_error_recorded_and_cleared(quiet_gateway):
    store, _ = _build(quiet_gateway)
    store.fetch_messages("C1")
    _, deliver, fail = quiet_gateway.subscribe_to_messages.call_args.args

    fail(RuntimeError("permission denied"))
    assert "permission denied" in store.errors["C1"]
    assert store.is_loading_messages["C1"] is False

    # A failed feed is dead; reopening clears the error
    store.fetch_messages("C1")
    _, deliver, _ = quiet_gateway.subscribe_to_messages.call_args.args
    deliver([_msg("m1")])
    assert "C1" not in store.errors


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_example_scenario(quiet_gateway):
    store, cache = _build(quiet_gateway)
    cache.save("C1", [_msg("m1", text="hey")])
    store.fetch_messages("C1")
    assert [m.id for m in store.messages["C1"]] == ["m1"]

    gate = asyncio.Event()

    async def send(cid, message):
        await gate.wait()
        return "m2"

    quiet_gateway.send_message = send
    task = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="yo")))
    await asyncio.sleep(0)

    assert [(m.text, m.status) for m in store.messages["C1"]] == [
        ("hey", MessageStatus.SENT),
        ("yo", MessageStatus.SENDING),
    ]
    assert store.messages["C1"][1].id.startswith("temp-")

    gate.set()
    sent = await task
    assert [(m.id, m.text, m.status) for m in store.messages["C1"]] == [
        ("m1", "hey", MessageStatus.SENT),
        ("m2", "yo", MessageStatus.SENT),
    ]
    assert sent.id == "m2"


@pytest.mark.asyncio
async def test_optimistic_placeholder_then_same_index():
    gateway = GatedGateway()
    gateway.next_ids = ["srv-1"]
    store, _ = _build(gateway)
    store.messages["C1"] = [_msg("m1")]

    task = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="hi")))
    await asyncio.sleep(0)

    placeholder = store.messages["C1"][-1]
    assert placeholder.status is MessageStatus.SENDING
    assert placeholder.is_temporary
    assert placeholder.text == "hi"
    assert store.sending_messages["C1"] is True

    gateway.gate.set()
    await task

    assert store.messages["C1"][1].id == "srv-1"
    assert store.messages["C1"][1].status is MessageStatus.SENT
    assert len(store.messages["C1"]) == 2
    assert store.sending_messages["C1"] is False


@pytest.mark.asyncio
async def test_send_failure_keeps_failed_placeholder(quiet_gateway):
    store, _ = _build(quiet_gateway)
    quiet_gateway.send_message = AsyncMock(side_effect=GatewayError("HTTP 503"))

    with pytest.raises(GatewayError):
        await store.send_message(Message(conversation_id="C1", sender="u1", text="hi"))

    [failed] = store.messages["C1"]
    assert failed.status is MessageStatus.FAILED
    assert failed.is_temporary
    assert store.sending_messages["C1"] is False


@pytest.mark.asyncio
async def test_draft_fields_are_overridden(quiet_gateway):
    store, _ = _build(quiet_gateway)
    draft = Message(id="m9", conversation_id="C1", sender="u1", text="hi", read=True, status=MessageStatus.READ)
    gate = asyncio.Event()

    async def slow(cid, message):
        await gate.wait()
        return "m2"

    quiet_gateway.send_message = slow
    task = asyncio.create_task(store.send_message(draft))
    await asyncio.sleep(0)

    placeholder = store.messages["C1"][0]
    assert placeholder.is_temporary
    assert placeholder.read is False
    assert placeholder.status is MessageStatus.SENDING
    gate.set()
    await task


@pytest.mark.asyncio
async def test_concurrent_sends_keep_their_slots():
    gateway = GatedGateway()
    gateway.next_ids = ["srv-a", "srv-b"]
    store, _ = _build(gateway)

    first = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="a")))
    second = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="b")))
    await asyncio.sleep(0)
    assert [m.text for m in store.messages["C1"]] == ["a", "b"]

    gateway.gate.set()
    await asyncio.gather(first, second)

    assert [(m.id, m.text) for m in store.messages["C1"]] == [("srv-a", "a"), ("srv-b", "b")]
    assert store.sending_messages["C1"] is False


@pytest.mark.asyncio
async def test_snapshot_during_send_keeps_placeholder():
    gateway = GatedGateway()
    gateway.next_ids = ["srv-1"]
    store, _ = _build(gateway)
    store.fetch_messages("C1")

    task = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="hi")))
    await asyncio.sleep(0)

    gateway.push("C1", [_msg("m1")])
    assert [m.id for m in store.messages["C1"]][0] == "m1"
    assert store.messages["C1"][1].status is MessageStatus.SENDING
    # Placeholders never reach the cache
    assert [m.id for m in store.cache.load("C1")] == ["m1"]

    gateway.gate.set()
    await task
    assert [m.id for m in store.messages["C1"]] == ["m1", "srv-1"]


@pytest.mark.asyncio
async def test_live_feed_first_does_not_duplicate(store, gateway):
    """MemoryGateway emits the stored message before send_message returns."""
    store.fetch_messages("C1")
    gateway.push("C1", [_msg("m1")])

    sent = await store.send_message(Message(conversation_id="C1", sender="u1", text="hi"))

    ids = [m.id for m in store.messages["C1"]]
    assert ids == ["m1", sent.id]
    assert not any(m.is_temporary for m in store.messages["C1"])


@pytest.mark.asyncio
async def test_snapshot_keeps_failed_placeholder(store, gateway):
    store.fetch_messages("C1")
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(gateway, "send_message", AsyncMock(side_effect=GatewayError("down")))
        with pytest.raises(GatewayError):
            await store.send_message(Message(conversation_id="C1", sender="u1", text="hi"))

    gateway.push("C1", [_msg("m1")])
    statuses = [(m.id, m.status) for m in store.messages["C1"]]
    assert statuses[0] == ("m1", MessageStatus.SENT)
    assert statuses[1][1] is MessageStatus.FAILED


@pytest.mark.asyncio
async def test_cancelled_send_marks_failed():
    gateway = GatedGateway()
    store, _ = _build(gateway)

    task = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="hi")))
    await asyncio.sleep(0)
    assert store.messages["C1"][0].status is MessageStatus.SENDING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [failed] = store.messages["C1"]
    assert failed.status is MessageStatus.FAILED
    assert failed.is_temporary
    assert store.sending_messages["C1"] is False
    assert failed.id not in store.confirmed_ids


@pytest.mark.asyncio
async def test_send_after_clear_returns_none():
    gateway = GatedGateway()
    gateway.next_ids = ["srv-1"]
    store, _ = _build(gateway)

    task = asyncio.create_task(store.send_message(Message(conversation_id="C1", sender="u1", text="hi")))
    await asyncio.sleep(0)
    store.clear_messages("C1")
    gateway.gate.set()

    assert await task is None
    assert "C1" not in store.messages
    assert "C1" not in store.sending_messages


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_media_upload_and_send(quiet_gateway):
    store, _ = _build(quiet_gateway)

    sent = await store.upload_and_send_media_message("file:///tmp/a.jpg", "C1", "u1", "image")

    assert sent.id == "m2"
    assert sent.status is MessageStatus.SENT
    assert sent.type is MessageType.IMAGE
    assert sent.media_url == "https://cdn/img.jpg"
    assert sent.local_uri is None
    assert sent.text == "📷 Photo"

    upload_args = quiet_gateway.upload_media.call_args.args
    assert upload_args[0] == "file:///tmp/a.jpg"
    assert upload_args[2].startswith("temp-")
    outgoing = quiet_gateway.send_message.call_args.args[1]
    assert outgoing.media_url == "https://cdn/img.jpg"


@pytest.mark.asyncio
async def test_media_upload_failure(quiet_gateway):
    store, _ = _build(quiet_gateway)
    quiet_gateway.upload_media = AsyncMock(side_effect=GatewayError("too big"))

    with pytest.raises(GatewayError):
        await store.upload_and_send_media_message("file:///tmp/a.gif", "C1", "u1", MessageType.GIF)

    [failed] = store.messages["C1"]
    assert failed.status is MessageStatus.FAILED
    assert failed.local_uri == "file:///tmp/a.gif"
    assert failed.media_url is None
    quiet_gateway.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_media_rejects_text_type(store):
    with pytest.raises(ValueError):
        await store.upload_and_send_media_message("file:///a", "C1", "u1", "text")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retry_failed_text(quiet_gateway):
    store, _ = _build(quiet_gateway)
    quiet_gateway.send_message = AsyncMock(side_effect=[GatewayError("down"), "m2"])
    with pytest.raises(GatewayError):
        await store.send_message(Message(conversation_id="C1", sender="u1", text="hi"))
    temp_id = store.messages["C1"][0].id

    sent = await store.retry_message("C1", temp_id)

    assert sent.id == "m2"
    assert sent.retry_count == 1
    assert len(store.messages["C1"]) == 1


@pytest.mark.asyncio
async def test_retry_media_reuploads(quiet_gateway):
    store, _ = _build(quiet_gateway)
    quiet_gateway.upload_media = AsyncMock(side_effect=[GatewayError("down"), "https://cdn/b.jpg"])
    with pytest.raises(GatewayError):
        await store.upload_and_send_media_message("file:///b.jpg", "C1", "u1", "image")
    temp_id = store.messages["C1"][0].id

    sent = await store.retry_message("C1", temp_id)

    assert quiet_gateway.upload_media.call_count == 2
    assert sent.media_url == "https://cdn/b.jpg"


@pytest.mark.asyncio
async def test_retry_requires_failed(quiet_gateway):
    store, _ = _build(quiet_gateway)
    store.messages["C1"] = [_msg("m1")]
    with pytest.raises(IllegalTransitionError):
        await store.retry_message("C1", "m1")
    with pytest.raises(KeyError):
        await store.retry_message("C1", "nope")


# ---------------------------------------------------------------------------
# Read state & teardown
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mark_as_read_only_touches_others(quiet_gateway):
    store, _ = _build(quiet_gateway)
    store.messages["C1"] = [
        _msg("m1", sender="bob"),
        _msg("m2", sender="alice"),
        _msg("m3", sender="bob"),
    ]

    await store.mark_messages_as_read("C1", "alice")

    assert [m.read for m in store.messages["C1"]] == [True, False, True]
    quiet_gateway.mark_messages_as_read.assert_awaited_once_with("C1", "alice")


@pytest.mark.asyncio
async def test_mark_as_read_failure_changes_nothing(quiet_gateway):
    store, _ = _build(quiet_gateway)
    store.messages["C1"] = [_msg("m1", sender="bob")]
    quiet_gateway.mark_messages_as_read = AsyncMock(side_effect=GatewayError("down"))

    with pytest.raises(GatewayError):
        await store.mark_messages_as_read("C1", "alice")
    assert store.messages["C1"][0].read is False


def test_cleanup_stops_updates(store, gateway):
    store.fetch_messages("C1")
    gateway.push("C1", [_msg("m1")])
    store.cleanup_message_subscription("C1")

    gateway.push("C1", [_msg("m1"), _msg("m2")])

    assert [m.id for m in store.messages["C1"]] == ["m1"]
    assert gateway.listener_count("C1") == 0


def test_clear_all(store, gateway):
    for cid in ("C1", "C2"):
        store.fetch_messages(cid)
        gateway.push(cid, [_msg("m1", conversation_id=cid)])
    store.cache.backend.set("offlineMessageQueue", "[]")

    store.clear_messages()

    assert store.messages == {}
    assert store.is_loading_messages == {}
    assert store.sending_messages == {}
    assert store.cache.conversation_ids() == []
    assert store.cache.backend.get("offlineMessageQueue") == "[]"


def test_clear_one(store, gateway):
    for cid in ("C1", "C2"):
        store.fetch_messages(cid)
        gateway.push(cid, [_msg("m1", conversation_id=cid)])

    store.clear_messages("C1")

    assert "C1" not in store.messages
    assert "C2" in store.messages
    assert store.cache.conversation_ids() == ["C2"]


def test_wiretap_records_snapshots(gateway):
    tap = MagicMock()
    cache = LocalCache(make_backend("memory"))
    store = MessageStore(cache, SubscriptionManager(gateway), gateway, wiretap=tap)
    store.fetch_messages("C1")
    gateway.push("C1", [_msg("m1")])
    tap.log.assert_called_with("inbound", "snapshot", "C1", message_id="", count=1)
