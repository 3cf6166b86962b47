"""In-process state store for development and tests.

Implements the same semantics as the Redis store, including TTL expiry
and atomic list pops, without any network dependency.
"""

from __future__ import annotations

import copy
import time
from collections import deque
from typing import Any

from campaign_bridge.store.base import StateStore


class InMemoryStateStore(StateStore):
    """TTL-aware dictionary store."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _container(self, key: str, factory: type) -> Any:
        if not self._alive(key):
            self._data[key] = factory()
        value = self._data[key]
        if not isinstance(value, factory):
            raise TypeError(f"Key {key} holds a {type(value).__name__}, not a {factory.__name__}")
        return value

    async def get_json(self, key: str) -> Any | None:
        if not self._alive(key):
            return None
        return copy.deepcopy(self._data[key])

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        self._data[key] = copy.deepcopy(value)
        if ttl:
            self._expires[key] = time.monotonic() + ttl
        else:
            self._expires.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = time.monotonic() + ttl
        return True

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def rpush_json(self, key: str, *values: Any) -> int:
        queue = self._container(key, deque)
        queue.extend(copy.deepcopy(v) for v in values)
        return len(queue)

    async def lpop_json(self, key: str) -> Any | None:
        if not self._alive(key):
            return None
        queue = self._data[key]
        if not queue:
            return None
        value = queue.popleft()
        if not queue:
            await self.delete(key)
        return value

    async def llen(self, key: str) -> int:
        if not self._alive(key):
            return 0
        return len(self._data[key])

    async def hset_json(self, key: str, field: str, value: Any) -> None:
        self._container(key, dict)[field] = copy.deepcopy(value)

    async def hget_json(self, key: str, field: str) -> Any | None:
        if not self._alive(key):
            return None
        return copy.deepcopy(self._data[key].get(field))

    async def hgetall_json(self, key: str) -> dict[str, Any]:
        if not self._alive(key):
            return {}
        return copy.deepcopy(self._data[key])

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._container(key, set)
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        if not self._alive(key):
            return 0
        members_set = self._data[key]
        removed = len(members_set & set(members))
        members_set.difference_update(members)
        return removed

    async def smembers(self, key: str) -> set[str]:
        if not self._alive(key):
            return set()
        return set(self._data[key])

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._expires.clear()

    def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires (None if no TTL)."""
        if not self._alive(key):
            return None
        deadline = self._expires.get(key)
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())
