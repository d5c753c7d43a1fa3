"""Tenant-aware Redis wrapper with automatic key prefixing.

Every Redis key is automatically prefixed with t:{tenant_id}: so cached
values never leak between tenants. Used for the pricebook health report
cache; the tenant lookup cache in TenantMiddleware talks to the raw pool.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.app.config import get_settings
from src.app.core.tenant import get_current_tenant

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ── Tenant Redis Wrapper ───────────────────────────────────────────────────


class TenantRedis:
    """Redis wrapper that prefixes all keys with t:{tenant_id}:.

    The tenant comes from ``tenant_id`` when given (background work that
    runs outside a request), otherwise from the request's tenant context.
    """

    def __init__(self, redis_client: aioredis.Redis, tenant_id: str | None = None):
        self._redis = redis_client
        self._tenant_id = tenant_id

    def _key(self, key: str) -> str:
        """Generate a tenant-prefixed key: t:{tenant_id}:{key}."""
        tenant_id = self._tenant_id or get_current_tenant().tenant_id
        return f"t:{tenant_id}:{key}"

    async def get(self, key: str) -> str | None:
        """Get a value by tenant-prefixed key."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        """Set a value with optional TTL (seconds)."""
        await self._redis.set(self._key(key), value, ex=ex)

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns number of keys deleted."""
        if not keys:
            return 0
        return await self._redis.delete(*(self._key(k) for k in keys))


def get_tenant_redis(tenant_id: str | None = None) -> TenantRedis:
    """Get a TenantRedis instance using the global Redis pool."""
    return TenantRedis(get_redis_pool(), tenant_id)
