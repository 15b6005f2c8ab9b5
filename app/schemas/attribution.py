# app/schemas/attribution.py
from datetime import datetime
from decimal import Decimal
from typing import Literal
from pydantic import BaseModel


class AttributionClick(BaseModel):
    id: int
    referral_code: str
    fingerprint: str
    origin_hash: str
    created_at: datetime
    expires_at: datetime
    converted: bool
    converted_at: datetime | None = None
    conversion_value: Decimal | None = None

    class Config:
        from_attributes = True


class ConversionResult(BaseModel):
    """What the resolver decided for one signup."""
    status: Literal["matched", "unmatched", "organic"]
    member_id: int
    referral_code: str | None = None
    click_id: int | None = None


class SignupResult(BaseModel):
    outcome: str
    member_id: int
    referral_code: str
    member_origin: str
    conversion: ConversionResult | None = None
