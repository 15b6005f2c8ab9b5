# app/routers/v1/endpoints/leaderboards.py

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.dependencies import get_db, get_ledger_cache
from app.schemas.leaderboard import Leaderboard, LeaderboardName
from app.services import ranking as ranking_service
from app.services.cache import LedgerCache

router = APIRouter(prefix="/leaderboards")


@router.get("/{board}", response_model=Leaderboard)
async def get_leaderboard(
    board: LeaderboardName,
    limit: int = Query(10, ge=1, le=100),
    member_id: int | None = Query(None),
    creator_id: int | None = Query(None),
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
):
    """
    Top members of a board. Pass `member_id` to also get that member's
    position when it is outside the top slice. The community board needs
    `creator_id` or `member_id`.
    """
    if board == "community" and creator_id is None and member_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="creator_id or member_id is required for the community leaderboard"
        )
    return await ranking_service.get_cached_leaderboard(
        db, cache, board, limit=limit, member_id=member_id, creator_id=creator_id
    )
