# app/models/commission.py
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.db.session import Base

class Commission(Base):
    __tablename__ = "commissions"
    id = Column(Integer, primary_key=True, index=True)

    # Idempotency key: one commission per upstream payment
    upstream_payment_id = Column(String, unique=True, nullable=False, index=True)
    upstream_membership_id = Column(String, nullable=False, index=True)

    sale_amount = Column(Numeric(12, 2), nullable=False)
    member_share = Column(Numeric(12, 2), nullable=False)
    creator_share = Column(Numeric(12, 2), nullable=False)
    platform_share = Column(Numeric(12, 2), nullable=False)

    # 'initial' | 'recurring'
    payment_type = Column(String, nullable=False)
    # 'pending' | 'paid' | 'partial_refund' | 'reversed'
    status = Column(String, nullable=False, default="paid")

    applied_rate = Column(Numeric(5, 4), nullable=False)
    applied_tier = Column(String, nullable=True)
    # 'tier' | 'custom'
    rate_source = Column(String, nullable=False, default="tier")

    # Running totals of all refunds against this payment
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    member_share_reversed = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    creator_share_reversed = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    platform_share_reversed = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")

    referrer_member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    creator_id = Column(Integer, ForeignKey("creators.id"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reversed_at = Column(DateTime(timezone=True), nullable=True)
    reversal_reason = Column(String, nullable=True)

    referrer = relationship("Member", back_populates="commissions", foreign_keys=[referrer_member_id])
    refunds = relationship("Refund", back_populates="commission", order_by="Refund.id")
