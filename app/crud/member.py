# app/crud/member.py
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import func

from app.models.creator import Creator
from app.models.member import Member


def get_member_by_id(db: Session, member_id: int) -> Member | None:
    """Gets a member by primary key."""
    return db.query(Member).filter(Member.id == member_id).first()

def get_member_by_referral_code(db: Session, code: str) -> Member | None:
    return db.query(Member).filter(Member.referral_code == code).first()

def get_member_by_membership_id(db: Session, membership_id: str) -> Member | None:
    return db.query(Member).filter(Member.membership_id == membership_id).first()

def create_member(
    db: Session,
    user_id: str,
    membership_id: str,
    referral_code: str,
    creator_id: int,
    username: str | None = None,
    email: str | None = None,
    referred_by: str | None = None,
    member_origin: str = "organic",
    created_at: datetime | None = None
) -> Member:
    """
    Adds a new member to the session and flushes it to get an ID.
    Requires an outer db.commit().
    """
    member = Member(
        user_id=user_id,
        membership_id=membership_id,
        referral_code=referral_code,
        creator_id=creator_id,
        username=username,
        email=email,
        referred_by=referred_by,
        member_origin=member_origin,
    )
    if created_at is not None:
        member.created_at = created_at
    db.add(member)
    db.flush()
    return member

def count_referred_members(db: Session, referral_code: str) -> int:
    """Counts members that signed up with the given referral code."""
    return db.query(Member).filter(Member.referred_by == referral_code).count()

def get_referred_counts(db: Session, since: datetime | None = None) -> dict[str, int]:
    """Referral code -> number of referred members (optionally only those who joined since a date)."""
    query = db.query(Member.referred_by, func.count(Member.id)).filter(Member.referred_by.isnot(None))
    if since is not None:
        query = query.filter(Member.created_at >= since)
    rows = query.group_by(Member.referred_by).all()
    return {code: count for code, count in rows}

def get_members_with_company(db: Session) -> list[tuple[Member, str]]:
    """Every member with the company ID of its creator, oldest ID first."""
    return db.query(Member, Creator.company_id).join(
        Creator, Member.creator_id == Creator.id
    ).order_by(Member.id).all()

def get_members_with_custom_rates(db: Session, creator_id: int) -> list[Member]:
    return db.query(Member).filter(
        Member.creator_id == creator_id,
        Member.custom_rate.isnot(None)
    ).order_by(Member.custom_rate_set_at.desc()).all()
