# app/schemas/member.py
from datetime import datetime
from decimal import Decimal
from typing import List, Literal
from pydantic import BaseModel

from app.schemas.leaderboard import RankChange


class MemberAggregates(BaseModel):
    member_id: int
    referral_code: str
    username: str | None = None
    creator_id: int
    member_origin: str

    lifetime_earnings: Decimal
    monthly_earnings: Decimal
    total_referred: int
    monthly_referred: int

    current_tier: str
    effective_rate: Decimal
    rate_source: Literal["tier", "custom"]

    global_earnings_rank: int | None = None
    global_referrals_rank: int | None = None
    community_rank: int | None = None
    global_earnings_rank_change: RankChange | None = None
    global_referrals_rank_change: RankChange | None = None
    community_rank_change: RankChange | None = None


class EarningsBucket(BaseModel):
    period_start: datetime
    label: str
    earnings: Decimal
    commissions: int


class EarningsHistory(BaseModel):
    member_id: int
    granularity: Literal["day", "month"]
    start: datetime
    end: datetime
    total: Decimal
    buckets: List[EarningsBucket]
