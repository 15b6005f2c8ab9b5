# app/dependencies.py

import logging
from typing import Iterator
from contextlib import contextmanager

from fastapi import Depends, Header, HTTPException, status
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.redis import get_redis_client
from app.db.session import SessionLocal
from app.services.cache import LedgerCache
from app.services.ledger import LedgerRepository

# --- Logger ---
logger = logging.getLogger(__name__)

# --- DB session management ---
def get_db_session_instance() -> Session:
    """Creates a new DB session."""
    return SessionLocal()

def get_db() -> Iterator[Session]:
    """
    Main FastAPI dependency for a DB session.
    A generator, so it works with `Depends`.
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()

@contextmanager
def get_db_context() -> Iterator[Session]:
    """
    Context manager for a DB session outside FastAPI (scheduled jobs, background tasks, scripts).
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()

# --- Ledger ---

async def get_ledger_cache(redis: Redis = Depends(get_redis_client)) -> LedgerCache:
    return LedgerCache(redis)

def get_ledger(
    db: Session = Depends(get_db),
    cache: LedgerCache = Depends(get_ledger_cache)
) -> LedgerRepository:
    return LedgerRepository(db, cache)

# --- Admin access ---

async def verify_admin_key(x_admin_key: str = Header(...)):
    """Admin endpoints are called by the dashboard with a shared key."""
    if x_admin_key != settings.ADMIN_API_KEY:
        logger.warning("Admin request rejected: invalid X-Admin-Key.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
