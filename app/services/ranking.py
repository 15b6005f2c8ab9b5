# app/services/ranking.py

"""
Ranking engine.

Ranks use standard competition ranking ("1224"): equal metrics share a
rank and the next distinct value resumes at its 1-based position. Ties are
listed by earliest created_at, so older members appear first within a rank.

Three boards are kept on Member:
  - global earnings   (lifetime_earnings, all communities)
  - global referrals  (total_referred, all communities)
  - community         (total_referred, within the member's creator)

Members of test creators are left unranked when ranking real accounts only.
"""

import bisect
import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFound
from app.crud import member as crud_member
from app.models.creator import Creator
from app.models.member import Member
from app.schemas.leaderboard import Leaderboard, LeaderboardEntry, RankChange, RankingRecomputeResult
from app.services.cache import LEADERBOARDS_TAG, LedgerCache, community_tag, leaderboard_key, member_tag
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

RankRow = Tuple[int, Decimal | int, datetime]

# board -> (metric attribute, rank attribute, previous rank attribute)
BOARDS = {
    "earnings": ("lifetime_earnings", "global_earnings_rank", "previous_global_earnings_rank"),
    "referrals": ("total_referred", "global_referrals_rank", "previous_global_referrals_rank"),
    "community": ("total_referred", "community_rank", "previous_community_rank"),
}


def is_test_company(company_id: str | None) -> bool:
    return bool(company_id) and settings.TEST_COMPANY_MARKER in company_id


def assign_competition_ranks(rows: Iterable[RankRow]) -> Dict[int, int]:
    """
    rows: (member_id, metric, created_at). Returns member_id -> rank.
    """
    ordered = sorted(rows, key=lambda r: (-r[1], as_utc(r[2]), r[0]))
    ranks: Dict[int, int] = {}
    previous_metric = None
    current_rank = 0
    for index, (member_id, metric, _) in enumerate(ordered):
        if index == 0 or metric != previous_metric:
            current_rank = index + 1
            previous_metric = metric
        ranks[member_id] = current_rank
    return ranks


def rank_change(current: int | None, previous: int | None) -> RankChange | None:
    """Positive delta means the member moved up the board."""
    if current is None:
        return None
    if previous is None:
        return RankChange(direction="new", delta=0)
    delta = previous - current
    if delta > 0:
        return RankChange(direction="up", delta=delta)
    if delta < 0:
        return RankChange(direction="down", delta=-delta)
    return RankChange(direction="same", delta=0)


def recompute_all_rankings(db: Session, real_only: bool = True) -> RankingRecomputeResult:
    """Full recompute of all three boards. Current ranks become the previous snapshot."""
    rows = crud_member.get_members_with_company(db)

    ranked: List[Member] = []
    excluded: List[Member] = []
    for member, company_id in rows:
        if real_only and is_test_company(company_id):
            excluded.append(member)
        else:
            ranked.append(member)

    for member, _ in rows:
        member.previous_global_earnings_rank = member.global_earnings_rank
        member.previous_global_referrals_rank = member.global_referrals_rank
        member.previous_community_rank = member.community_rank

    earnings_ranks = assign_competition_ranks(
        (m.id, Decimal(m.lifetime_earnings or 0), m.created_at) for m in ranked
    )
    referral_ranks = assign_competition_ranks(
        (m.id, m.total_referred or 0, m.created_at) for m in ranked
    )

    by_community: Dict[int, List[Member]] = defaultdict(list)
    for m in ranked:
        by_community[m.creator_id].append(m)
    community_ranks: Dict[int, int] = {}
    for community_members in by_community.values():
        community_ranks.update(assign_competition_ranks(
            (m.id, m.total_referred or 0, m.created_at) for m in community_members
        ))

    for m in ranked:
        m.global_earnings_rank = earnings_ranks[m.id]
        m.global_referrals_rank = referral_ranks[m.id]
        m.community_rank = community_ranks[m.id]
    for m in excluded:
        m.global_earnings_rank = None
        m.global_referrals_rank = None
        m.community_rank = None

    db.commit()
    logger.info(
        f"Rankings recomputed for {len(ranked)} members across {len(by_community)} communities "
        f"({len(excluded)} test members excluded)."
    )
    return RankingRecomputeResult(members_ranked=len(ranked), members_excluded=len(excluded), real_only=real_only)


def _scope_members(db: Session, real_only: bool, creator_id: int | None = None) -> List[Member]:
    query = db.query(Member).join(Creator, Member.creator_id == Creator.id)
    if real_only:
        query = query.filter(~Creator.company_id.contains(settings.TEST_COMPANY_MARKER))
    if creator_id is not None:
        query = query.filter(Member.creator_id == creator_id)
    return query.all()


def _rerank_scope(scope: List[Member], metric_attr: str, rank_attr: str, low, high) -> int:
    """
    Re-derives rank = 1 + count(strictly greater) for every member whose
    metric lies in [low, high] or who has no rank yet.
    """
    metrics = sorted(getattr(m, metric_attr) or 0 for m in scope)
    total = len(metrics)
    updated = 0
    for m in scope:
        value = getattr(m, metric_attr) or 0
        if getattr(m, rank_attr) is not None and not (low <= value <= high):
            continue
        new_rank = 1 + (total - bisect.bisect_right(metrics, value))
        if getattr(m, rank_attr) != new_rank:
            setattr(m, rank_attr, new_rank)
            updated += 1
    return updated


def update_member_rankings(
    db: Session,
    member_id: int,
    previous_earnings: Decimal | None,
    previous_referred: int | None,
    real_only: bool = True
) -> int:
    """
    Incremental update after one member's counters changed. Only members
    whose metric lies between the old and the new value can change rank.
    Returns the number of rank fields written.
    """
    row = db.query(Member, Creator.company_id).join(Creator, Member.creator_id == Creator.id).filter(
        Member.id == member_id
    ).first()
    if not row:
        raise NotFound(f"Member {member_id} not found", details={"member_id": member_id})
    member, company_id = row

    if real_only and is_test_company(company_id):
        member.global_earnings_rank = None
        member.global_referrals_rank = None
        member.community_rank = None
        db.commit()
        return 0

    new_earnings = Decimal(member.lifetime_earnings or 0)
    old_earnings = Decimal(previous_earnings) if previous_earnings is not None else new_earnings
    new_referred = member.total_referred or 0
    old_referred = previous_referred if previous_referred is not None else new_referred

    global_scope = _scope_members(db, real_only)
    community_scope = [m for m in global_scope if m.creator_id == member.creator_id]

    updated = _rerank_scope(
        global_scope, "lifetime_earnings", "global_earnings_rank",
        min(old_earnings, new_earnings), max(old_earnings, new_earnings)
    )
    updated += _rerank_scope(
        global_scope, "total_referred", "global_referrals_rank",
        min(old_referred, new_referred), max(old_referred, new_referred)
    )
    updated += _rerank_scope(
        community_scope, "total_referred", "community_rank",
        min(old_referred, new_referred), max(old_referred, new_referred)
    )
    db.commit()
    logger.debug(f"Incremental ranking for member {member_id}: {updated} rank fields updated.")
    return updated


# --- Leaderboards ---

def _entry(member: Member, board: str) -> LeaderboardEntry:
    metric_attr, rank_attr, previous_attr = BOARDS[board]
    return LeaderboardEntry(
        rank=getattr(member, rank_attr),
        member_id=member.id,
        username=member.username,
        referral_code=member.referral_code,
        creator_id=member.creator_id,
        value=Decimal(getattr(member, metric_attr) or 0),
        rank_change=rank_change(getattr(member, rank_attr), getattr(member, previous_attr)),
    )


def get_leaderboard(
    db: Session,
    board: str,
    limit: int = 10,
    member_id: int | None = None,
    creator_id: int | None = None
) -> Leaderboard:
    """Top slice of a board from stored ranks, plus the caller's own position."""
    if board not in BOARDS:
        raise ValueError(f"Unknown leaderboard '{board}'")
    _, rank_attr, _ = BOARDS[board]
    rank_column = getattr(Member, rank_attr)

    requesting_member = None
    if member_id is not None:
        requesting_member = db.query(Member).filter(Member.id == member_id).first()
        if not requesting_member:
            raise NotFound(f"Member {member_id} not found", details={"member_id": member_id})

    if board == "community" and creator_id is None:
        if requesting_member is None:
            raise ValueError("The community leaderboard needs a creator_id or member_id")
        creator_id = requesting_member.creator_id

    query = db.query(Member).filter(rank_column.isnot(None))
    if board == "community":
        query = query.filter(Member.creator_id == creator_id)
    top = query.order_by(rank_column.asc(), Member.created_at.asc(), Member.id.asc()).limit(limit).all()

    entries = [_entry(m, board) for m in top]
    your_rank = None
    if requesting_member is not None and all(e.member_id != requesting_member.id for e in entries):
        in_scope = board != "community" or requesting_member.creator_id == creator_id
        if in_scope and getattr(requesting_member, rank_attr) is not None:
            your_rank = _entry(requesting_member, board)

    return Leaderboard(
        board=board,
        creator_id=creator_id if board == "community" else None,
        entries=entries,
        your_rank=your_rank,
        generated_at=utcnow(),
    )


async def get_cached_leaderboard(
    db: Session,
    cache: LedgerCache,
    board: str,
    limit: int = 10,
    member_id: int | None = None,
    creator_id: int | None = None
) -> Leaderboard:
    key = leaderboard_key(board, limit, member_id, creator_id)
    cached = await cache.get(key, Leaderboard)
    if cached:
        return cached

    leaderboard = get_leaderboard(db, board, limit=limit, member_id=member_id, creator_id=creator_id)
    tags = [LEADERBOARDS_TAG]
    if leaderboard.creator_id is not None:
        tags.append(community_tag(leaderboard.creator_id))
    if member_id is not None:
        tags.append(member_tag(member_id))
    await cache.set(key, leaderboard, ttl=settings.LEADERBOARD_CACHE_TTL_SECONDS, tags=tags)
    return leaderboard
