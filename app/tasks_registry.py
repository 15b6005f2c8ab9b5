# app/tasks_registry.py

import logging
from decimal import Decimal

from app.core.redis import redis_client
from app.dependencies import get_db_context
from app.services import consistency, monthly_reset, ranking
from app.services.cache import LEADERBOARDS_TAG, LedgerCache

logger = logging.getLogger(__name__)

# --- Wrappers that open their own DB session for each job ---

async def run_recompute_rankings():
    with get_db_context() as db:
        result = ranking.recompute_all_rankings(db, real_only=True)
    await LedgerCache(redis_client).invalidate_tags(LEADERBOARDS_TAG)
    return result

async def run_consistency_check():
    with get_db_context() as db:
        return consistency.verify_consistency(db, auto_fix=False)

async def run_monthly_reset():
    return await monthly_reset.reset_monthly_counters_task()

def run_member_ranking_update(member_id: int, previous_earnings: Decimal | None, previous_referred: int | None):
    """Background task after a ledger write. Failures only delay ranks until the next full recompute."""
    with get_db_context() as db:
        try:
            ranking.update_member_rankings(db, member_id, previous_earnings, previous_referred)
        except Exception:
            db.rollback()
            logger.error(f"Incremental ranking update failed for member {member_id}", exc_info=True)


# --- Registry of jobs available for manual runs ---
# 'function' - the job to call.
# 'description' - shown in the admin listing.
# 'is_async' - how to run it.

TASKS = {
    "recompute_rankings": {
        "function": run_recompute_rankings,
        "description": "Full recompute of global earnings, global referrals and community ranks.",
        "is_async": True,
    },
    "verify_consistency": {
        "function": run_consistency_check,
        "description": "Re-derives member counters from the commission log and reports drift (read-only).",
        "is_async": True,
    },
    "monthly_reset": {
        "function": run_monthly_reset,
        "description": "Zeroes monthly earnings and referral counters (once per month).",
        "is_async": True,
    },
}

def get_tasks_list():
    return [
        {"task_name": name, "description": data["description"]}
        for name, data in TASKS.items()
    ]
