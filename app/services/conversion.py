# app/services/conversion.py

import logging
from datetime import datetime
from decimal import Decimal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import IngestionOutcome
from app.crud import attribution as crud_attribution
from app.crud import creator as crud_creator
from app.crud import member as crud_member
from app.models.member import Member
from app.schemas.attribution import ConversionResult, SignupResult
from app.services import referral_code as referral_code_service
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)


def resolve_conversion(
    db: Session,
    member: Member,
    signup_time: datetime,
    sale_amount: Decimal | None = None
) -> ConversionResult:
    """
    Binds a referred signup to the closest preceding open click of its code.
    Requires an outer db.commit().
    """
    if not member.referred_by:
        return ConversionResult(status="organic", member_id=member.id)

    signup_time = as_utc(signup_time)
    candidates = crud_attribution.get_open_clicks_for_code(db, member.referred_by, at=signup_time)

    for click in candidates:
        # Conditional update; a concurrent signup may have taken this click
        if crud_attribution.mark_converted(db, click.id, converted_at=signup_time, conversion_value=sale_amount):
            member.attribution_click_id = click.id
            db.flush()
            logger.info(f"Signup of member {member.id} attributed to click {click.id} ({member.referred_by})")
            return ConversionResult(
                status="matched",
                member_id=member.id,
                referral_code=member.referred_by,
                click_id=click.id,
            )
        logger.debug(f"Click {click.id} was converted concurrently, trying the next candidate.")

    logger.warning(
        f"No open click for code {member.referred_by} at {signup_time.isoformat()}; "
        f"member {member.id} kept as referred without attribution."
    )
    return ConversionResult(status="unmatched", member_id=member.id, referral_code=member.referred_by)


def register_signup(
    db: Session,
    membership_id: str,
    user_id: str,
    company_id: str,
    company_name: str | None = None,
    product_url: str | None = None,
    username: str | None = None,
    email: str | None = None,
    referred_by: str | None = None,
    created_at: datetime | None = None,
    sale_amount: Decimal | None = None
) -> SignupResult:
    """
    Creates the member for a new membership and resolves its attribution.
    Replays of the same membership return the stored member untouched.
    """
    existing = crud_member.get_member_by_membership_id(db, membership_id)
    if existing:
        logger.info(f"Signup for membership {membership_id} already recorded as member {existing.id}. Skipping.")
        return SignupResult(
            outcome=IngestionOutcome.DUPLICATE_IGNORED.value,
            member_id=existing.id,
            referral_code=existing.referral_code,
            member_origin=existing.member_origin,
        )

    signup_time = as_utc(created_at) if created_at else utcnow()

    # Only codes that belong to someone count as a referral
    referrer = None
    if referred_by:
        referrer = crud_member.get_member_by_referral_code(db, code=referred_by)
        if not referrer:
            logger.warning(f"Signup {membership_id} carries unknown referral code '{referred_by}'. Treating as organic.")

    try:
        creator = crud_creator.get_or_create_creator(
            db, company_id=company_id, company_name=company_name, product_url=product_url
        )
        member = crud_member.create_member(
            db,
            user_id=user_id,
            membership_id=membership_id,
            referral_code=referral_code_service.issue_unique_referral_code(db, username or email),
            creator_id=creator.id,
            username=username,
            email=email,
            referred_by=referrer.referral_code if referrer else None,
            member_origin="referred" if referrer else "organic",
            created_at=signup_time,
        )
        conversion = resolve_conversion(db, member, signup_time, sale_amount)
        db.commit()
    except IntegrityError:
        # Lost a race against a concurrent delivery of the same signup
        db.rollback()
        existing = crud_member.get_member_by_membership_id(db, membership_id)
        if existing is None:
            raise
        logger.info(f"Concurrent signup for membership {membership_id} detected; using member {existing.id}.")
        return SignupResult(
            outcome=IngestionOutcome.DUPLICATE_IGNORED.value,
            member_id=existing.id,
            referral_code=existing.referral_code,
            member_origin=existing.member_origin,
        )

    db.refresh(member)
    outcome = IngestionOutcome.UNMATCHED if conversion.status == "unmatched" else IngestionOutcome.PROCESSED
    logger.info(
        f"Member {member.id} ({member.referral_code}) registered for membership {membership_id}, "
        f"origin={member.member_origin}, attribution={conversion.status}"
    )
    return SignupResult(
        outcome=outcome.value,
        member_id=member.id,
        referral_code=member.referral_code,
        member_origin=member.member_origin,
        conversion=conversion,
    )
