from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

_SECURITY_CONFIG_KEY = "auth:security_config"


class RedisCache:
    """Shared cache for the security config and revoked-session markers.

    Postgres stays authoritative: a missing key only means "ask the store".
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_security_config(self) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(_SECURITY_CONFIG_KEY)
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None

    async def set_security_config(self, values: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(_SECURITY_CONFIG_KEY, json.dumps(values), ex=max(1, ttl_seconds))

    async def invalidate_security_config(self) -> None:
        await self.client.delete(_SECURITY_CONFIG_KEY)

    async def mark_session_revoked(self, session_id: str, expires_at: datetime) -> None:
        """Remember a revocation until the session would have expired anyway."""
        await self.client.set(
            f"auth:session:revoked:{session_id}", "1", ex=self._ttl_seconds(expires_at)
        )

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"auth:session:revoked:{session_id}"))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class _SyncClientAdapter:
    """Wraps a sync Redis client with the async method signatures RedisCache uses."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache backed by a synchronous client.

    Used in test mode, where each test runs its own event loop and an async
    connection pool would stay bound to the first one.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self.client.close()
