"""Redis cache of the latest payload per lead.

The database stays the source of truth; the cache only spares the read
side a JSON column load for the most recent snapshot.
"""

import json
import logging

from redis.asyncio import Redis

from copytrade_tracker.ingestor.models import LeadPayload

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 600  # 10 minutes
DEFAULT_REDIS_KEY_PREFIX = "copytrade:lead:"


class LeadPayloadCache:
    """Cache-first store for ``LeadPayload`` documents.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        cache = LeadPayloadCache(redis)

        await cache.set_payload(payload)
        latest = await cache.get_payload(payload.lead_id)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        key_prefix: str = DEFAULT_REDIS_KEY_PREFIX,
    ) -> None:
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._key_prefix = key_prefix

    def _key(self, lead_id: str) -> str:
        return f"{self._key_prefix}{lead_id}"

    async def set_payload(self, payload: LeadPayload) -> None:
        """Cache a lead's latest payload with the configured TTL."""
        value = json.dumps(payload.to_dict())
        await self._redis.setex(self._key(payload.lead_id), self._cache_ttl, value)

    async def get_payload(self, lead_id: str) -> LeadPayload | None:
        """Return the cached payload, or None on a miss or unreadable entry."""
        cached = await self._redis.get(self._key(lead_id))
        if not cached:
            return None
        try:
            if isinstance(cached, bytes):
                cached = cached.decode()
            data = json.loads(cached)
            return LeadPayload.from_dict(data)
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError) as e:
            logger.warning("Failed to parse cached payload for lead %s: %s", lead_id, e)
            return None

    async def invalidate(self, lead_id: str) -> bool:
        """Delete a cached payload.

        Returns:
            True if the key was deleted, False if it didn't exist.
        """
        deleted = await self._redis.delete(self._key(lead_id))
        return int(deleted) > 0

    async def aclose(self) -> None:
        await self._redis.aclose()
