"""
CacheBackend: abstract base for on-device key-value storage.

All backends implement four primitives:
  get     - raw string value for a key, or None
  set     - store a raw string value
  delete  - remove keys (missing keys are fine)
  keys    - list stored keys, optionally by prefix

Serialization stays in LocalCache (the caller), not here.
Backends only move strings around.
"""

from abc import ABC, abstractmethod


class CacheBackend(ABC):
    """Abstract key-value storage backend."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Insert or overwrite a value."""
        ...

    @abstractmethod
    def delete(self, *keys: str) -> None:
        """Remove the given keys."""
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Return stored keys starting with `prefix`, sorted."""
        ...
