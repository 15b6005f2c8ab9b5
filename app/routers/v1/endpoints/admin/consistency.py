# app/routers/v1/endpoints/admin/consistency.py

import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.dependencies import get_db, get_ledger_cache
from app.schemas.consistency import ConsistencyReport
from app.services import consistency as consistency_service
from app.services.cache import AGGREGATES_TAG, LEADERBOARDS_TAG, LedgerCache

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/verify", response_model=ConsistencyReport)
async def verify_consistency_endpoint(
    auto_fix: bool = Query(False, description="Rewrite drifted counters from the commission log"),
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
):
    """
    [ADMIN] Re-derives all member counters and reports discrepancies.
    """
    logger.info(f"Consistency verification requested (auto_fix={auto_fix}).")
    report = consistency_service.verify_consistency(db, auto_fix=auto_fix)
    if report.fixed_count:
        await cache.invalidate_tags(LEADERBOARDS_TAG, AGGREGATES_TAG)
    return report
