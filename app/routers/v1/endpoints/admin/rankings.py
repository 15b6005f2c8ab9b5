# app/routers/v1/endpoints/admin/rankings.py

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.dependencies import get_db, get_ledger_cache
from app.schemas.leaderboard import RankingRecomputeResult
from app.services import ranking as ranking_service
from app.services.cache import AGGREGATES_TAG, LEADERBOARDS_TAG, LedgerCache

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/recompute", response_model=RankingRecomputeResult)
async def recompute_rankings_endpoint(
    real_only: bool = Query(True, description="Leave members of test communities unranked"),
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
):
    """[ADMIN] Full ranking recompute."""
    result = ranking_service.recompute_all_rankings(db, real_only=real_only)
    await cache.invalidate_tags(LEADERBOARDS_TAG, AGGREGATES_TAG)
    return result
