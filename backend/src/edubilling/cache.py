"""Product ID cache for Stripe addon and plan products.

Stripe product IDs are resolved once (search, else create) and cached so
concurrent checkouts do not each search Stripe. The cache is injected into
the services that need it: an in-process dict for a single worker and tests,
Redis when several workers share the same products.
"""
from typing import Optional, Protocol

import structlog
import redis.asyncio as redis

from edubilling.config import settings

logger = structlog.get_logger(__name__)


class ProductCache(Protocol):
    """Key/value store for resolved Stripe product IDs."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def put(self, key: str, value: str) -> None:
        ...


class InMemoryProductCache:
    """Process-local cache backed by a dict."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def put(self, key: str, value: str) -> None:
        self._values[key] = value

    def __len__(self) -> int:
        return len(self._values)


class RedisProductCache:
    """Redis-backed cache shared across worker processes."""

    def __init__(self, url: str | None = None, ttl: int | None = None):
        """
        Initialize cache settings. The connection is opened lazily.

        Args:
            url: Redis URL (defaults to settings.redis_url)
            ttl: Time-to-live in seconds for cached IDs
        """
        self.url = url or str(settings.redis_url)
        self.ttl = ttl or settings.product_cache_ttl_seconds
        self.redis_client: Optional[redis.Redis] = None

    async def _ensure_connection(self) -> redis.Redis:
        """
        Ensure Redis connection is established.

        Returns:
            Redis client instance
        """
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            logger.info("redis_connected", url=self.url)
        return self.redis_client

    async def get(self, key: str) -> Optional[str]:
        """
        Get a cached product ID.

        A Redis outage degrades to a cache miss; the caller then resolves the
        product from Stripe.

        Args:
            key: Cache key

        Returns:
            Cached value or None if missing
        """
        try:
            client = await self._ensure_connection()
            value = await client.get(key)
        except redis.RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

        logger.debug("cache_hit" if value is not None else "cache_miss", key=key)
        return value

    async def put(self, key: str, value: str) -> None:
        """
        Store a product ID with the configured TTL.

        Args:
            key: Cache key
            value: Stripe product ID
        """
        try:
            client = await self._ensure_connection()
            await client.setex(key, self.ttl, value)
        except redis.RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))
            return
        logger.debug("cache_set", key=key, ttl=self.ttl)

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_closed")


def cache_key(entity_type: str, entity_id: str, suffix: str = "") -> str:
    """
    Generate consistent cache key.

    Args:
        entity_type: Entity type (addon, plan)
        entity_id: Entity identifier
        suffix: Optional suffix for variations

    Returns:
        Cache key string
    """
    if suffix:
        return f"stripe_product:{entity_type}:{entity_id}:{suffix}"
    return f"stripe_product:{entity_type}:{entity_id}"


def build_product_cache() -> ProductCache:
    """Create the cache configured for this process."""
    if settings.product_cache_backend == "redis":
        return RedisProductCache()
    return InMemoryProductCache()
