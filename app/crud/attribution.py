# app/crud/attribution.py
from datetime import datetime
from decimal import Decimal
from typing import List
from sqlalchemy.orm import Session
from sqlalchemy import update

from app.models.attribution import AttributionClick


def create_click(
    db: Session,
    referral_code: str,
    fingerprint: str,
    origin_hash: str,
    created_at: datetime,
    expires_at: datetime
) -> AttributionClick:
    """
    Adds a click to the session.
    Requires an outer db.commit().
    """
    click = AttributionClick(
        referral_code=referral_code,
        fingerprint=fingerprint,
        origin_hash=origin_hash,
        created_at=created_at,
        expires_at=expires_at,
        converted=False,
    )
    db.add(click)
    return click

def get_open_clicks_for_code(db: Session, referral_code: str, at: datetime) -> List[AttributionClick]:
    """
    Unconverted clicks for the code whose window covers `at`,
    closest preceding click first.
    """
    return db.query(AttributionClick).filter(
        AttributionClick.referral_code == referral_code,
        AttributionClick.converted.is_(False),
        AttributionClick.created_at <= at,
        AttributionClick.expires_at >= at,
    ).order_by(AttributionClick.created_at.desc(), AttributionClick.id.desc()).all()

def mark_converted(
    db: Session,
    click_id: int,
    converted_at: datetime,
    conversion_value: Decimal | None
) -> bool:
    """
    Conditionally flips the click to converted. Returns False if another
    writer converted it first.
    """
    result = db.execute(
        update(AttributionClick)
        .where(AttributionClick.id == click_id, AttributionClick.converted.is_(False))
        .values(converted=True, converted_at=converted_at, conversion_value=conversion_value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

def fill_conversion_value(db: Session, click_id: int, value: Decimal) -> None:
    db.execute(
        update(AttributionClick)
        .where(AttributionClick.id == click_id, AttributionClick.conversion_value.is_(None))
        .values(conversion_value=value)
        .execution_options(synchronize_session=False)
    )

def get_converted_clicks(db: Session) -> List[AttributionClick]:
    """Converted clicks, for integrity checks."""
    return db.query(AttributionClick).filter(AttributionClick.converted.is_(True)).all()
