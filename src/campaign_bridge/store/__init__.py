"""Shared state store.

Provides:
- StateStore interface with Redis and in-memory implementations
- create_store() selecting the backend from settings
- Campaign and conference repositories
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bridge_shared import get_logger

from campaign_bridge.store.base import StateStore
from campaign_bridge.store.memory_store import InMemoryStateStore
from campaign_bridge.store.redis_store import RedisStateStore

if TYPE_CHECKING:
    from campaign_bridge.config import RedisSettings

log = get_logger(__name__)


def create_store(settings: RedisSettings) -> StateStore:
    """Create the configured state store backend."""
    if settings.backend == "memory":
        log.warning("Using in-memory state store, state is not shared across processes")
        return InMemoryStateStore()

    if settings.backend != "redis":
        raise ValueError(f"Unknown store backend: {settings.backend}")

    log.info("Using Redis state store", url=settings.url)
    return RedisStateStore(settings.url)


__all__ = [
    "InMemoryStateStore",
    "RedisStateStore",
    "StateStore",
    "create_store",
]
