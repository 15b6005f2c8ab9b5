# app/core/redis.py
import redis.asyncio as redis
from app.core.config import settings

# decode_responses=True returns str instead of bytes
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_redis_client():
    """
    Dependency that hands the shared Redis client to endpoints.
    """
    return redis_client
