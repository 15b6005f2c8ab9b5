# app/services/cache.py

import logging
from typing import Iterable, Type, TypeVar
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

TAG_PREFIX = "ledger:tag:"


# --- Key helpers ---

def aggregates_key(member_id: int) -> str:
    return f"ledger:aggregates:{member_id}"

def leaderboard_key(board: str, limit: int, member_id: int | None, creator_id: int | None) -> str:
    return f"ledger:leaderboard:{board}:{limit}:{creator_id or '-'}:{member_id or '-'}"

def member_tag(member_id: int) -> str:
    return f"member:{member_id}"

def community_tag(creator_id: int) -> str:
    return f"community:{creator_id}"

LEADERBOARDS_TAG = "leaderboards"
AGGREGATES_TAG = "aggregates"


class LedgerCache:
    """
    Read-through cache for aggregates and leaderboards.

    Every entry is registered under one or more tags; the ledger invalidates
    tags after it commits. Redis being down never fails a caller: reads miss,
    writes and invalidations are logged and dropped.
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str, model: Type[ModelT]) -> ModelT | None:
        try:
            cached = await self.redis.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if not cached:
            return None
        try:
            return model.model_validate_json(cached)
        except Exception as e:
            logger.warning(f"Dropping unreadable cache entry {key}: {e}")
            return None

    async def set(self, key: str, value: BaseModel, ttl: int, tags: Iterable[str] = ()) -> None:
        try:
            await self.redis.set(key, value.model_dump_json(), ex=ttl)
            for tag in tags:
                await self.redis.sadd(f"{TAG_PREFIX}{tag}", key)
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def invalidate_tags(self, *tags: str) -> None:
        for tag in tags:
            tag_key = f"{TAG_PREFIX}{tag}"
            try:
                keys = await self.redis.smembers(tag_key)
                if keys:
                    await self.redis.delete(*keys)
                await self.redis.delete(tag_key)
                logger.debug(f"Invalidated {len(keys)} cache entries for tag '{tag}'")
            except RedisError as e:
                logger.warning(f"Cache invalidation failed for tag '{tag}': {e}")
