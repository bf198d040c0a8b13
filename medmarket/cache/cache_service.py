from typing import Optional, Any
import logging
from redis import asyncio as aioredis
from medmarket.core.config import settings

logger = logging.getLogger(__name__)


class RedisCache:
    def __init__(self):
        self.redis_url = settings.REDIS_URL
        self.redis: Optional[aioredis.Redis] = None

    async def connect(self):
        if not self.redis:
            try:
                self.redis = aioredis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                logger.info("Connected to Redis cache.")
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")

    async def get(self, key: str) -> Optional[str]:
        if not self.redis:
            await self.connect()
        try:
            return await self.redis.get(key)
        except Exception as e:
            logger.error(f"Redis get error for key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600):
        """Store a string value; callers serialize structured data themselves."""
        if not self.redis:
            await self.connect()
        try:
            await self.redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.error(f"Redis set error for key {key}: {e}")

    async def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """SET NX with expiry. Returns True when this call created the key.

        When Redis is unreachable the database check remains the only guard,
        so the caller is allowed to proceed.
        """
        if not self.redis:
            await self.connect()
        try:
            return bool(await self.redis.set(key, value, ex=ttl, nx=True))
        except Exception as e:
            logger.error(f"Redis set_if_absent error for key {key}: {e}")
            return True

    async def delete(self, key: str):
        if not self.redis:
            await self.connect()
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.error(f"Redis delete error for key {key}: {e}")

    async def close(self):
        if self.redis:
            await self.redis.close()


# Singleton instance
redis_cache = RedisCache()
