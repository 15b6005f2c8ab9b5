# tests/test_cache.py

from unittest.mock import AsyncMock
from redis.exceptions import ConnectionError as RedisConnectionError

from app.schemas.commission import ResolvedRate
from app.services.cache import LedgerCache, TAG_PREFIX, leaderboard_key


async def test_set_get_and_invalidate(ledger_cache, fake_redis):
    value = ResolvedRate(rate="0.15", source="tier", tier_name="ambassador")
    await ledger_cache.set("k1", value, ttl=60, tags=["member:1", "leaderboards"])

    assert await ledger_cache.get("k1", ResolvedRate) == value
    assert fake_redis.sets[f"{TAG_PREFIX}member:1"] == {"k1"}

    await ledger_cache.invalidate_tags("member:1")
    assert await ledger_cache.get("k1", ResolvedRate) is None
    assert f"{TAG_PREFIX}member:1" not in fake_redis.sets


async def test_unreadable_entry_is_a_miss(ledger_cache, fake_redis):
    await fake_redis.set("k1", "not json")
    assert await ledger_cache.get("k1", ResolvedRate) is None


async def test_redis_errors_are_swallowed(caplog):
    redis = AsyncMock()
    redis.get.side_effect = RedisConnectionError("down")
    redis.set.side_effect = RedisConnectionError("down")
    redis.smembers.side_effect = RedisConnectionError("down")
    cache = LedgerCache(redis)

    assert await cache.get("k1", ResolvedRate) is None
    await cache.set("k1", ResolvedRate(rate="0.10", source="tier"), ttl=60, tags=["member:1"])
    await cache.invalidate_tags("member:1")

    assert "Cache invalidation failed" in caplog.text


def test_leaderboard_key_scopes():
    assert leaderboard_key("earnings", 10, None, None) == "ledger:leaderboard:earnings:10:-:-"
    assert leaderboard_key("community", 5, 7, 3) == "ledger:leaderboard:community:5:3:7"
