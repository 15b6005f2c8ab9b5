# app/routers/v1/endpoints/members.py

import logging
from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.exceptions import NotFound
from app.crud import commission as crud_commission
from app.crud import member as crud_member
from app.dependencies import get_db, get_ledger
from app.schemas.commission import Commission, CommissionHistory, TierProgress
from app.schemas.member import EarningsHistory, MemberAggregates
from app.services import commission as commission_service
from app.services import earnings as earnings_service
from app.services.ledger import LedgerRepository
from app.utils.dates import as_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/members")


def _get_member_or_404(db: Session, member_id: int):
    member = crud_member.get_member_by_id(db, member_id)
    if not member:
        raise NotFound(f"Member {member_id} not found", details={"member_id": member_id})
    return member


@router.get("/{member_id}/aggregates", response_model=MemberAggregates)
async def get_member_aggregates(member_id: int, ledger: LedgerRepository = Depends(get_ledger)):
    """Earnings, referral counts, tier and ranks of a member."""
    return await ledger.get_aggregates(member_id)


@router.get("/{member_id}/commissions", response_model=CommissionHistory)
def get_member_commissions(
    member_id: int,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Commissions earned by a referrer, newest first. `end` is exclusive."""
    _get_member_or_404(db, member_id)
    start, end = as_utc(start), as_utc(end)
    if start and end and start >= end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be before end")
    items = crud_commission.get_member_commissions(db, member_id, start=start, end=end, skip=skip, limit=limit)
    return CommissionHistory(
        member_id=member_id,
        start=start,
        end=end,
        items=[Commission.model_validate(c) for c in items],
    )


@router.get("/{member_id}/earnings-history", response_model=EarningsHistory)
def get_member_earnings_history(
    member_id: int,
    days: int = Query(30, ge=1, le=366),
    db: Session = Depends(get_db)
):
    """Daily buckets for up to 90 days, monthly buckets beyond that."""
    return earnings_service.get_earnings_history(db, member_id, days=days)


@router.get("/{member_id}/tier-progress", response_model=TierProgress)
def get_member_tier_progress(member_id: int, db: Session = Depends(get_db)):
    member = _get_member_or_404(db, member_id)
    return commission_service.next_tier_info(member.total_referred or 0)
