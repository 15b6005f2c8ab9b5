# app/models/refund.py
from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.db.session import Base

class Refund(Base):
    """One upstream refund against a commissioned payment. Several partial refunds may hit one payment."""
    __tablename__ = "refunds"
    id = Column(Integer, primary_key=True, index=True)

    # Idempotency key for refund deliveries
    upstream_refund_id = Column(String, unique=True, nullable=False, index=True)
    upstream_payment_id = Column(String, nullable=False, index=True)
    commission_id = Column(Integer, ForeignKey("commissions.id"), nullable=False, index=True)

    refund_amount = Column(Numeric(12, 2), nullable=False)
    member_share_reversed = Column(Numeric(12, 2), nullable=False)
    creator_share_reversed = Column(Numeric(12, 2), nullable=False)
    platform_share_reversed = Column(Numeric(12, 2), nullable=False)
    reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    commission = relationship("Commission", back_populates="refunds")
