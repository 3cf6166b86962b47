"""Shared state store interface.

Every value is stored as JSON. Implementations must make ``lpop_json``
an atomic single-item dequeue so two batches never claim the same
contact.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StateStore(ABC):
    """Async key/value, list, hash and set store with per-key TTLs."""

    # ========================================================================
    # Key/value
    # ========================================================================

    @abstractmethod
    async def get_json(self, key: str) -> Any | None:
        """Return the decoded value at ``key`` or None."""

    @abstractmethod
    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Store ``value`` at ``key``, replacing any TTL with ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Set a TTL on an existing key."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    # ========================================================================
    # Lists (FIFO queues)
    # ========================================================================

    @abstractmethod
    async def rpush_json(self, key: str, *values: Any) -> int:
        """Append values to the tail of a list. Returns the new length."""

    @abstractmethod
    async def lpop_json(self, key: str) -> Any | None:
        """Atomically remove and return the head of a list."""

    @abstractmethod
    async def llen(self, key: str) -> int: ...

    # ========================================================================
    # Hashes
    # ========================================================================

    @abstractmethod
    async def hset_json(self, key: str, field: str, value: Any) -> None: ...

    @abstractmethod
    async def hget_json(self, key: str, field: str) -> Any | None: ...

    @abstractmethod
    async def hgetall_json(self, key: str) -> dict[str, Any]: ...

    # ========================================================================
    # Sets
    # ========================================================================

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def connect(self) -> None:
        """Wait until the backend is reachable. Called once at startup."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    @abstractmethod
    async def close(self) -> None: ...
