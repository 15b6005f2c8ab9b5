# app/services/attribution.py

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Mapping
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import NotFound
from app.crud import attribution as crud_attribution
from app.crud import member as crud_member
from app.models.attribution import AttributionClick
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

UNKNOWN_ORIGIN = "unknown"

# Checked in order; the first header present wins
ORIGIN_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
    "x-cluster-client-ip",
)


def extract_real_origin(headers: Mapping[str, str]) -> str | None:
    """Client address as reported by the proxies in front of us."""
    for header in ORIGIN_HEADERS:
        value = headers.get(header)
        if value:
            return value
    return None


def _normalize_origin(raw_origin: str) -> str:
    # "1.2.3.4:5678, 10.0.0.1" -> "1.2.3.4"
    first = raw_origin.split(",")[0].strip()
    if first.startswith("["):
        # [ipv6]:port
        return first[1:first.index("]")]
    if first.count(":") == 1:
        return first.split(":")[0]
    return first


def hash_origin(raw_origin: str | None) -> str:
    """
    Salted one-way hash of the client address, first 16 hex chars.
    Never raises: anything unusable becomes 'unknown'.
    """
    if not raw_origin:
        return UNKNOWN_ORIGIN
    try:
        origin = _normalize_origin(raw_origin)
        if not origin:
            return UNKNOWN_ORIGIN
        digest = hashlib.sha256(f"{origin}{settings.ORIGIN_HASH_SALT}".encode("utf-8")).hexdigest()
        return digest[:16]
    except Exception as e:
        logger.warning(f"Could not hash client origin '{raw_origin}': {e}")
        return UNKNOWN_ORIGIN


def generate_fingerprint(user_agent: str | None, raw_origin: str | None) -> str:
    """Fallback fingerprint when the client did not send one."""
    ua = user_agent or "unknown"
    origin = (raw_origin or UNKNOWN_ORIGIN).split(",")[0].strip()
    return hashlib.sha256(f"{ua}|{origin}".encode("utf-8")).hexdigest()[:32]


def record_click(
    db: Session,
    referral_code: str,
    fingerprint: str,
    raw_origin: str | None,
    now: datetime | None = None
) -> AttributionClick:
    """
    Stores one click for a known referral code. The click is attributable
    for ATTRIBUTION_WINDOW_DAYS from `now`.
    """
    member = crud_member.get_member_by_referral_code(db, code=referral_code)
    if not member:
        raise NotFound(f"Referral code '{referral_code}' does not exist", details={"referral_code": referral_code})

    created_at = as_utc(now) if now else utcnow()
    expires_at = created_at + timedelta(days=settings.ATTRIBUTION_WINDOW_DAYS)

    click = crud_attribution.create_click(
        db,
        referral_code=referral_code,
        fingerprint=fingerprint,
        origin_hash=hash_origin(raw_origin),
        created_at=created_at,
        expires_at=expires_at,
    )
    db.commit()
    db.refresh(click)

    logger.info(f"Click {click.id} recorded for code {referral_code}, attributable until {expires_at.isoformat()}")
    return click
