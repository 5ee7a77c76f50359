"""
Cache backend factory.

Usage:
    from matchbox.storage.backends import make_backend
    backend = make_backend("sqlite", path="./data/cache.db")

Adding a new backend:
    1. Create matchbox/storage/backends/<name>.py implementing CacheBackend.
    2. Add an entry to _REGISTRY below.
    3. Set  cache.backend: <name>  in config.yaml.
    No other changes required.
"""

from .base import CacheBackend

_REGISTRY: dict[str, type[CacheBackend]] = {}


def _register():
    """Lazy-import backends on first use."""
    global _REGISTRY
    if _REGISTRY:
        return
    from .memory import MemoryBackend
    from .sqlite import SQLiteBackend
    _REGISTRY["sqlite"] = SQLiteBackend
    _REGISTRY["memory"] = MemoryBackend


def make_backend(backend_type: str, **kwargs) -> CacheBackend:
    """
    Instantiate a cache backend by name.

    Args:
        backend_type: Registry key (e.g. "sqlite").
        **kwargs:     Passed directly to the backend constructor.

    Raises:
        ValueError: If the backend type is not registered.
    """
    _register()
    cls = _REGISTRY.get(backend_type)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown cache backend: '{backend_type}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["CacheBackend", "make_backend"]
