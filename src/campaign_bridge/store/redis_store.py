"""Redis implementation of the shared state store."""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from bridge_shared import get_logger

from campaign_bridge.core.exceptions import StoreError, wrap_exception
from campaign_bridge.core.retry import RetryConfig, RetryExhausted, retry_async
from campaign_bridge.store.base import StateStore

log = get_logger(__name__)

# Startup only; request-path operations fail fast
CONNECT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=(RedisConnectionError, RedisTimeoutError, OSError),
)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(raw: str | None) -> Any | None:
    if raw is None:
        return None
    return json.loads(raw)


class RedisStateStore(StateStore):
    """State store backed by ``redis.asyncio``.

    Redis errors are wrapped in StoreError so callers handle a single
    exception type.
    """

    def __init__(
        self,
        url: str,
        client: redis.Redis | None = None,
        connect_retry: RetryConfig = CONNECT_RETRY_CONFIG,
    ) -> None:
        """Initialize store.

        Args:
            url: Redis connection URL
            client: Pre-configured client (tests inject a fake)
            connect_retry: Backoff used while waiting for Redis at startup
        """
        self.url = url
        self.connect_retry = connect_retry
        self._client = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
        )

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def get_json(self, key: str) -> Any | None:
        try:
            return _loads(await self._client.get(key))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to read {key}", key=key) from e

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            await self._client.set(key, _dumps(value), ex=ttl)
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to write {key}", key=key) from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except RedisError as e:
            raise wrap_exception(e, StoreError, "Failed to delete keys", keys=list(keys)) from e

    async def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(await self._client.expire(key, ttl))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to set TTL on {key}", key=key) from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to check {key}", key=key) from e

    async def rpush_json(self, key: str, *values: Any) -> int:
        if not values:
            return await self.llen(key)
        try:
            return int(await self._client.rpush(key, *(_dumps(v) for v in values)))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to push to {key}", key=key) from e

    async def lpop_json(self, key: str) -> Any | None:
        try:
            return _loads(await self._client.lpop(key))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to pop from {key}", key=key) from e

    async def llen(self, key: str) -> int:
        try:
            return int(await self._client.llen(key))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to read length of {key}", key=key) from e

    async def hset_json(self, key: str, field: str, value: Any) -> None:
        try:
            await self._client.hset(key, field, _dumps(value))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to write {key}.{field}", key=key) from e

    async def hget_json(self, key: str, field: str) -> Any | None:
        try:
            return _loads(await self._client.hget(key, field))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to read {key}.{field}", key=key) from e

    async def hgetall_json(self, key: str) -> dict[str, Any]:
        try:
            raw = await self._client.hgetall(key)
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to read {key}", key=key) from e
        return {name: _loads(value) for name, value in raw.items()}

    async def sadd(self, key: str, *members: str) -> int:
        try:
            return int(await self._client.sadd(key, *members))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to add to {key}", key=key) from e

    async def srem(self, key: str, *members: str) -> int:
        try:
            return int(await self._client.srem(key, *members))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to remove from {key}", key=key) from e

    async def smembers(self, key: str) -> set[str]:
        try:
            return set(await self._client.smembers(key))
        except RedisError as e:
            raise wrap_exception(e, StoreError, f"Failed to read {key}", key=key) from e

    async def connect(self) -> None:
        """Ping Redis with backoff until it answers.

        Raises:
            StoreError: If Redis is still unreachable after the last attempt
        """
        try:
            await retry_async(self._client.ping, config=self.connect_retry)
        except RetryExhausted as e:
            log.error("Redis unreachable", url=self.url, attempts=e.attempts)
            raise StoreError(
                "Redis unreachable",
                details={"url": self.url, "attempts": e.attempts},
                cause=e.last_error,
            ) from e
        except RedisError as e:
            raise wrap_exception(e, StoreError, "Redis connection failed", url=self.url) from e
        log.info("Redis connected", url=self.url)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise wrap_exception(e, StoreError, "Redis ping failed", url=self.url) from e

    async def close(self) -> None:
        await self._client.aclose()
        log.info("Redis connection closed", url=self.url)
