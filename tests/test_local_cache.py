"""
Tests for the local cache and its key-value backends.
Uses a temp database for each test.
"""

import pytest

from matchbox.models import Conversation, LastMessage, Message, MessageStatus
from matchbox.storage import LocalCache, make_backend, messages_key
from matchbox.storage.backends.memory import MemoryBackend
from matchbox.storage.backends.sqlite import SQLiteBackend


@pytest.fixture(params=["sqlite", "memory"])
def backend(request, tmp_path):
    return make_backend(request.param, path=str(tmp_path / "cache.db"))


@pytest.fixture
def cache(backend):
    return LocalCache(backend)


def _msg(mid, text="hi"):
    return Message(id=mid, conversation_id="c1", sender="u1", text=text, status=MessageStatus.SENT)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

def test_make_backend_types(tmp_path):
    assert isinstance(make_backend("sqlite", path=str(tmp_path / "a.db")), SQLiteBackend)
    assert isinstance(make_backend("memory"), MemoryBackend)


def test_make_backend_unknown():
    with pytest.raises(ValueError, match="Unknown cache backend"):
        make_backend("floppy")


def test_backend_get_set_delete(backend):
    assert backend.get("k") is None
    backend.set("k", "v1")
    backend.set("k", "v2")
    assert backend.get("k") == "v2"
    backend.delete("k", "missing")
    assert backend.get("k") is None


def test_backend_keys_prefix_is_literal(backend):
    """An underscore in the prefix is not a wildcard."""
    backend.set("messages_a", "1")
    backend.set("messagesXb", "2")
    backend.set("conversations", "3")
    assert backend.keys("messages_") == ["messages_a"]
    assert backend.keys() == ["conversations", "messagesXb", "messages_a"]


def test_sqlite_persists_across_instances(tmp_path):
    path = str(tmp_path / "cache.db")
    SQLiteBackend(path).set("k", "v")
    assert SQLiteBackend(path).get("k") == "v"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def test_save_and_load(cache):
    cache.save("c1", [_msg("m1", "one"), _msg("m2", "two")])
    loaded = cache.load("c1")
    assert [m.id for m in loaded] == ["m1", "m2"]
    assert loaded[1].text == "two"


def test_load_missing_is_empty(cache):
    assert cache.load("nope") == []


def test_corrupt_entry_reads_as_empty(cache, backend):
    backend.set(messages_key("c1"), "{not json")
    assert cache.load("c1") == []
    backend.set(messages_key("c1"), '{"a": 1}')
    assert cache.load("c1") == []


def test_save_failure_is_swallowed(cache, backend, monkeypatch):
    def boom(key, value):
        raise OSError("disk full")
    monkeypatch.setattr(backend, "set", boom)
    cache.save("c1", [_msg("m1")])  # must not raise
    assert cache.load("c1") == []


def test_clear_one(cache):
    cache.save("c1", [_msg("m1")])
    cache.save("c2", [_msg("m2")])
    cache.clear("c1")
    assert cache.load("c1") == []
    assert len(cache.load("c2")) == 1


def test_clear_all_keeps_other_keys(cache, backend):
    cache.save("c1", [_msg("m1")])
    cache.save("c2", [_msg("m2")])
    backend.set("offlineMessageQueue", "[]")
    cache.clear()
    assert cache.conversation_ids() == []
    assert backend.get("offlineMessageQueue") == "[]"


def test_conversation_ids(cache):
    cache.save("c1", [_msg("m1")])
    cache.save("c2", [])
    assert sorted(cache.conversation_ids()) == ["c1", "c2"]


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

def test_conversations_round_trip(cache):
    convs = [
        Conversation(id="c1", user_id="u1", last_message=LastMessage(text="hey", timestamp="2024-01-01T00:00:00Z")),
        Conversation(id="c2", user_id="u1", unread_count=3),
    ]
    cache.save_conversations(convs)
    assert cache.load_conversations() == convs
    cache.clear_conversations()
    assert cache.load_conversations() == []
