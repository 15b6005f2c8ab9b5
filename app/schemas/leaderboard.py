# app/schemas/leaderboard.py
from datetime import datetime
from decimal import Decimal
from typing import List, Literal
from pydantic import BaseModel

LeaderboardName = Literal["earnings", "referrals", "community"]


class RankChange(BaseModel):
    direction: Literal["up", "down", "same", "new"]
    delta: int = 0


class LeaderboardEntry(BaseModel):
    rank: int
    member_id: int
    username: str | None = None
    referral_code: str
    creator_id: int
    value: Decimal
    rank_change: RankChange | None = None


class Leaderboard(BaseModel):
    board: LeaderboardName
    creator_id: int | None = None
    entries: List[LeaderboardEntry]
    # Present when the requested member is outside the top slice
    your_rank: LeaderboardEntry | None = None
    generated_at: datetime


class RankingRecomputeResult(BaseModel):
    members_ranked: int
    members_excluded: int
    real_only: bool
