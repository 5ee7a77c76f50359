from matchbox.storage.backends import CacheBackend, make_backend
from matchbox.storage.local_cache import LocalCache, messages_key

__all__ = ["CacheBackend", "LocalCache", "make_backend", "messages_key"]
