# app/services/monthly_reset.py

import logging
from datetime import datetime
from redis.asyncio import Redis
from sqlalchemy import update

from app.core.redis import redis_client
from app.dependencies import get_db_context
from app.models.creator import Creator
from app.models.member import Member
from app.services.cache import AGGREGATES_TAG, LEADERBOARDS_TAG, LedgerCache
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

# One key per month; expires well after the month is over
RESET_GUARD_TTL_SECONDS = 40 * 24 * 3600


def reset_guard_key(now: datetime) -> str:
    return f"ledger:monthly_reset:{now:%Y-%m}"


async def reset_monthly_counters_task(redis: Redis | None = None, now: datetime | None = None) -> bool:
    """
    Zeroes monthly_earnings/monthly_referred for every member and
    monthly_revenue for every creator.
    Runs at most once per calendar month across all workers.
    Returns False if this month's reset already happened.
    """
    redis = redis or redis_client
    now = as_utc(now) if now else utcnow()
    guard_key = reset_guard_key(now)

    acquired = await redis.set(guard_key, now.isoformat(), ex=RESET_GUARD_TTL_SECONDS, nx=True)
    if not acquired:
        logger.info(f"Monthly counters for {now:%Y-%m} were already reset. Skipping.")
        return False

    logger.info(f"Starting monthly counter reset for {now:%Y-%m}...")
    with get_db_context() as db:
        try:
            result = db.execute(
                update(Member)
                .values(monthly_earnings=0, monthly_referred=0)
                .execution_options(synchronize_session=False)
            )
            db.execute(
                update(Creator)
                .values(monthly_revenue=0)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            # Let the next run retry
            await redis.delete(guard_key)
            logger.error("Monthly counter reset failed.", exc_info=True)
            raise

    await LedgerCache(redis).invalidate_tags(LEADERBOARDS_TAG, AGGREGATES_TAG)
    logger.info(f"Monthly counters reset for {result.rowcount} members.")
    return True
