"""In-process ephemeral cache with per-key TTL.

Backed by cachetools.TLRUCache so every entry carries its own expiry. The
cache is a hint only: its contents are lost on restart and are always
cross-checked against the durable store by the monitor.
"""

import time
from collections.abc import Callable
from typing import Any, Optional

from cachetools import TLRUCache  # type: ignore[import-untyped]

STREAM_PREFIX = "stream:"


def stream_key(session_id: str) -> str:
    return f"{STREAM_PREFIX}{session_id}"


def _ttu(_key: str, value: tuple[Any, float], now: float) -> float:
    return now + value[1]


class EphemeralCache:
    """get / set-with-TTL / delete by key plus prefix scans."""

    def __init__(self, maxsize: int = 4096, timer: Callable[[], float] = time.monotonic):
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_ttu, timer=timer)

    def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        return entry[0]

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._cache[key] = (value, float(ttl))

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        """Return all unexpired keys starting with prefix."""
        self._cache.expire()
        return [key for key in list(self._cache.keys()) if key.startswith(prefix)]

    def delete_prefix(self, prefix: str) -> int:
        keys = self.keys(prefix)
        for key in keys:
            self.delete(key)
        return len(keys)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def size(self) -> int:
        self._cache.expire()
        return len(self._cache)


# Global cache instance
stream_cache = EphemeralCache()
