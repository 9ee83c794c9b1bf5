"""Simple TTL cache helpers for room status and listing lookups."""
from __future__ import annotations

from typing import Generic, Optional, TypeVar

from cachetools import TTLCache

from .config import get_settings

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 256) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)

    def get(self, key: str) -> Optional[T]:
        return self._cache.get(key)

    def set(self, key: str, value: T) -> None:
        self._cache[key] = value

    def pop(self, key: str) -> None:
        self._cache.pop(key, None)

    def pop_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``; returns how many were removed."""

        stale = [key for key in list(self._cache.keys()) if key.startswith(prefix)]
        for key in stale:
            self._cache.pop(key, None)
        return len(stale)

    def clear(self) -> None:
        self._cache.clear()


def room_status_key(room_id: int) -> str:
    return f"room-status:{room_id}"


ROOM_LIST_PREFIX = "room-list:"

room_cache: SimpleTTLCache[object] = SimpleTTLCache(ttl=get_settings().room_cache_ttl)


def invalidate_room(room_id: int) -> None:
    """Forget cached status for one room and every cached room listing."""

    room_cache.pop(room_status_key(room_id))
    room_cache.pop_prefix(ROOM_LIST_PREFIX)
