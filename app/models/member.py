# app/models/member.py

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, func
from sqlalchemy.orm import relationship
from app.db.session import Base

class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    membership_id = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, nullable=True)
    email = Column(String, nullable=True)

    # NAME-XXXXXX, issued once and never changed
    referral_code = Column(String, unique=True, index=True, nullable=False)
    # Referral code of whoever brought this member in
    referred_by = Column(String, index=True, nullable=True)
    # 'organic' | 'referred'
    member_origin = Column(String, nullable=False, default="organic", server_default="organic")
    attribution_click_id = Column(Integer, ForeignKey("attribution_clicks.id"), nullable=True)

    creator_id = Column(Integer, ForeignKey("creators.id"), index=True, nullable=False)

    # --- Denormalized aggregates, written only by the ledger ---
    lifetime_earnings = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    monthly_earnings = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    total_referred = Column(Integer, nullable=False, default=0, server_default="0")
    monthly_referred = Column(Integer, nullable=False, default=0, server_default="0")

    # --- Ranks (derived, refreshed by the ranking engine) ---
    global_earnings_rank = Column(Integer, nullable=True)
    global_referrals_rank = Column(Integer, nullable=True)
    community_rank = Column(Integer, nullable=True)
    previous_global_earnings_rank = Column(Integer, nullable=True)
    previous_global_referrals_rank = Column(Integer, nullable=True)
    previous_community_rank = Column(Integer, nullable=True)

    current_tier = Column(String, nullable=False, default="starter", server_default="starter")

    # Creator-set override of the tier rate
    custom_rate = Column(Numeric(5, 4), nullable=True)
    custom_rate_reason = Column(String, nullable=True)
    custom_rate_set_by = Column(Integer, nullable=True)
    custom_rate_set_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    creator = relationship("Creator", back_populates="members")
    attribution_click = relationship("AttributionClick")
    commissions = relationship(
        "Commission", back_populates="referrer", foreign_keys="Commission.referrer_member_id"
    )
