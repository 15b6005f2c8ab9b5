# app/crud/refund.py
from decimal import Decimal
from typing import Dict, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.models.refund import Refund


def get_refund_by_upstream_id(db: Session, upstream_refund_id: str) -> Refund | None:
    return db.query(Refund).filter(Refund.upstream_refund_id == upstream_refund_id).first()

def create_refund(
    db: Session,
    upstream_refund_id: str,
    upstream_payment_id: str,
    commission_id: int,
    refund_amount: Decimal,
    member_share_reversed: Decimal,
    creator_share_reversed: Decimal,
    platform_share_reversed: Decimal,
    reason: str | None = None
) -> Refund:
    """
    Adds a refund row and flushes it, so a replayed refund id fails here.
    Requires an outer db.commit().
    """
    refund = Refund(
        upstream_refund_id=upstream_refund_id,
        upstream_payment_id=upstream_payment_id,
        commission_id=commission_id,
        refund_amount=refund_amount,
        member_share_reversed=member_share_reversed,
        creator_share_reversed=creator_share_reversed,
        platform_share_reversed=platform_share_reversed,
        reason=reason,
    )
    db.add(refund)
    db.flush()
    return refund

def get_refund_totals_by_commission(db: Session) -> Dict[int, Tuple[Decimal, Decimal]]:
    """commission_id -> (refunded amount, member share reversed) summed over refund rows."""
    rows = db.query(
        Refund.commission_id,
        func.sum(Refund.refund_amount),
        func.sum(Refund.member_share_reversed),
    ).group_by(Refund.commission_id).all()
    return {cid: (Decimal(amount or 0), Decimal(member or 0)) for cid, amount, member in rows}
