# app/crud/commission.py

from datetime import datetime
from decimal import Decimal
from typing import Dict, List
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.models.commission import Commission

# Statuses whose shares (net of refunds) count towards earnings and revenue
EARNING_STATUSES = ("paid", "partial_refund")

def get_commission_by_payment_id(db: Session, upstream_payment_id: str) -> Commission | None:
    return db.query(Commission).filter(Commission.upstream_payment_id == upstream_payment_id).first()

def count_commissions_for_membership(db: Session, upstream_membership_id: str) -> int:
    """Number of commissions already recorded for a membership (initial + recurring)."""
    return db.query(Commission).filter(
        Commission.upstream_membership_id == upstream_membership_id
    ).count()

def get_member_commissions(
    db: Session,
    member_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    skip: int = 0,
    limit: int = 50
) -> List[Commission]:
    """Commission history of a referrer, newest first."""
    query = db.query(Commission).filter(Commission.referrer_member_id == member_id)
    if start is not None:
        query = query.filter(Commission.created_at >= start)
    if end is not None:
        query = query.filter(Commission.created_at < end)
    return query.order_by(Commission.created_at.desc(), Commission.id.desc()).offset(skip).limit(limit).all()

def get_earning_commissions_in_range(db: Session, member_id: int, start: datetime, end: datetime) -> List[Commission]:
    """Commissions that still carry earnings (fully reversed ones are left out)."""
    return db.query(Commission).filter(
        Commission.referrer_member_id == member_id,
        Commission.status.in_(EARNING_STATUSES),
        Commission.created_at >= start,
        Commission.created_at < end,
    ).order_by(Commission.created_at.asc()).all()

def get_all_commissions(db: Session) -> List[Commission]:
    return db.query(Commission).order_by(Commission.id).all()

def get_net_member_earnings(db: Session, since: datetime | None = None) -> Dict[int, Decimal]:
    """member_id -> Σ(member_share - member_share_reversed), optionally only commissions since a date."""
    query = db.query(
        Commission.referrer_member_id,
        func.sum(Commission.member_share - Commission.member_share_reversed)
    ).filter(Commission.status.in_(EARNING_STATUSES))
    if since is not None:
        query = query.filter(Commission.created_at >= since)
    rows = query.group_by(Commission.referrer_member_id).all()
    return {member_id: Decimal(total or 0) for member_id, total in rows}

def get_net_creator_revenue(db: Session, since: datetime | None = None) -> Dict[int, Decimal]:
    """creator_id -> Σ(creator_share - creator_share_reversed)."""
    query = db.query(
        Commission.creator_id,
        func.sum(Commission.creator_share - Commission.creator_share_reversed)
    ).filter(Commission.status.in_(EARNING_STATUSES))
    if since is not None:
        query = query.filter(Commission.created_at >= since)
    rows = query.group_by(Commission.creator_id).all()
    return {creator_id: Decimal(total or 0) for creator_id, total in rows}

def count_earning_commissions_by_member(db: Session) -> Dict[int, int]:
    rows = db.query(Commission.referrer_member_id, func.count(Commission.id)).filter(
        Commission.status.in_(EARNING_STATUSES)
    ).group_by(Commission.referrer_member_id).all()
    return {member_id: count for member_id, count in rows}
