# app/schemas/commission.py
from datetime import datetime
from decimal import Decimal
from typing import List, Literal
from pydantic import BaseModel, Field

PaymentType = Literal["initial", "recurring"]
CommissionStatus = Literal["pending", "paid", "partial_refund", "reversed"]
RateSource = Literal["tier", "custom"]


class CommissionTier(BaseModel):
    tier_name: str
    min_paid_referrals: int = Field(ge=0)
    rate: Decimal


class ResolvedRate(BaseModel):
    rate: Decimal
    source: RateSource
    tier_name: str | None = None


class CommissionSplit(BaseModel):
    """Result of the commission calculator. Shares always add up to sale_amount."""
    sale_amount: Decimal
    member_share: Decimal
    creator_share: Decimal
    platform_share: Decimal
    applied_rate: Decimal
    applied_tier: str | None = None
    rate_source: RateSource

    @property
    def total(self) -> Decimal:
        return self.member_share + self.creator_share + self.platform_share


class TierProgress(BaseModel):
    current_tier: str
    current_rate: Decimal
    next_tier: str | None  # null when the top tier is reached
    next_rate: Decimal | None
    referrals_to_next_tier: int
    progress_percent: int


class Commission(BaseModel):
    id: int
    upstream_payment_id: str
    upstream_membership_id: str
    sale_amount: Decimal
    member_share: Decimal
    creator_share: Decimal
    platform_share: Decimal
    payment_type: PaymentType
    status: CommissionStatus
    applied_rate: Decimal
    applied_tier: str | None = None
    rate_source: RateSource
    refunded_amount: Decimal = Decimal("0")
    member_share_reversed: Decimal = Decimal("0")
    referrer_member_id: int
    created_at: datetime
    reversed_at: datetime | None = None

    class Config:
        from_attributes = True


class CommissionHistory(BaseModel):
    member_id: int
    start: datetime | None
    end: datetime | None
    items: List[Commission]


class CustomRateUpdate(BaseModel):
    rate: Decimal
    reason: str | None = Field(default=None, max_length=500)


class CustomRateInfo(BaseModel):
    member_id: int
    referral_code: str
    custom_rate: Decimal | None
    custom_rate_reason: str | None = None
    custom_rate_set_at: datetime | None = None
    effective_rate: Decimal
    rate_source: RateSource
