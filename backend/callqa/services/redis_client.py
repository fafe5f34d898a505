"""
Redis client for bulk-run state.

A run record ties an HTTP-visible run id to its Celery task and carries the
cancel flag read by the SSE stream.
"""
import json
from typing import Any

import redis.asyncio as redis

from callqa.config import settings


class RedisClient:
    """Async Redis client for bulk run records."""

    def __init__(self):
        self._client: redis.Redis | None = None

    async def get_client(self) -> redis.Redis:
        """Get or create Redis connection with connection pooling."""
        if self._client is None:
            self._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=20,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def set_run(self, run_id: str, data: dict[str, Any], ttl: int | None = None) -> None:
        client = await self.get_client()
        await client.setex(
            f"bulk_run:{run_id}",
            ttl or settings.bulk_run_ttl,
            json.dumps(data, ensure_ascii=False),
        )

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        client = await self.get_client()
        data = await client.get(f"bulk_run:{run_id}")
        if data:
            return json.loads(data)
        return None

    # Atomic JSON merge inside Redis, keeps the remaining TTL
    _UPDATE_LUA = """
    local key = KEYS[1]
    local updates_json = ARGV[1]
    local fallback_ttl = tonumber(ARGV[2])
    local current = redis.call('GET', key)
    if not current then return 0 end
    local data = cjson.decode(current)
    local updates = cjson.decode(updates_json)
    for k, v in pairs(updates) do data[k] = v end
    local ttl = redis.call('TTL', key)
    if ttl < 1 then ttl = fallback_ttl end
    redis.call('SETEX', key, ttl, cjson.encode(data))
    return 1
    """

    async def update_run(self, run_id: str, updates: dict[str, Any]) -> bool:
        """Merge updates into the run record. False if the run is unknown."""
        client = await self.get_client()
        result = await client.eval(
            self._UPDATE_LUA, 1, f"bulk_run:{run_id}",
            json.dumps(updates, ensure_ascii=False), settings.bulk_run_ttl,
        )
        return result == 1


# Singleton instance
redis_client = RedisClient()
