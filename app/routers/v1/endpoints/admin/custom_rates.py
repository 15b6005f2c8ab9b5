# app/routers/v1/endpoints/admin/custom_rates.py

import logging
from decimal import Decimal
from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.crud import member as crud_member
from app.dependencies import get_db, get_ledger_cache
from app.models.member import Member
from app.schemas.commission import CustomRateInfo, CustomRateUpdate
from app.services import commission as commission_service
from app.services.cache import LedgerCache, member_tag

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_info(member: Member) -> CustomRateInfo:
    resolved = commission_service.resolve_rate(member.total_referred or 0, member.custom_rate)
    return CustomRateInfo(
        member_id=member.id,
        referral_code=member.referral_code,
        custom_rate=Decimal(member.custom_rate) if member.custom_rate is not None else None,
        custom_rate_reason=member.custom_rate_reason,
        custom_rate_set_at=member.custom_rate_set_at,
        effective_rate=resolved.rate,
        rate_source=resolved.source,
    )


@router.get("/{creator_id}/custom-rates", response_model=List[CustomRateInfo])
def list_custom_rates(creator_id: int, db: Session = Depends(get_db)):
    """[ADMIN] Members of a community that have a custom rate."""
    return [_to_info(m) for m in crud_member.get_members_with_custom_rates(db, creator_id)]


@router.put("/{creator_id}/members/{member_id}/custom-rate", response_model=CustomRateInfo)
async def set_custom_rate_endpoint(
    creator_id: int,
    member_id: int,
    rate_in: CustomRateUpdate,
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
):
    """[ADMIN] Overrides the tier rate of one member (10-30%)."""
    member = commission_service.set_custom_rate(db, creator_id, member_id, rate_in.rate, reason=rate_in.reason)
    await cache.invalidate_tags(member_tag(member.id))
    return _to_info(member)


@router.delete("/{creator_id}/members/{member_id}/custom-rate", response_model=CustomRateInfo)
async def remove_custom_rate_endpoint(
    creator_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
):
    """[ADMIN] Back to tier-based rates."""
    member = commission_service.remove_custom_rate(db, creator_id, member_id)
    await cache.invalidate_tags(member_tag(member.id))
    return _to_info(member)
