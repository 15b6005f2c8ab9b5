# app/services/commission.py

"""
Commission calculator.

The split is: member gets the resolved rate (custom override or tier),
the platform keeps a fixed share, the creator gets the rest. Every share is
rounded to the minor unit on its own and the rounding remainder goes to the
creator share, so the three shares always add up to the sale amount.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, List, Sequence
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import InvalidAmount, InvalidCustomRate, NotFound
from app.crud import member as crud_member
from app.models.member import Member
from app.schemas.commission import CommissionSplit, CommissionTier, ResolvedRate, TierProgress
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

MINOR_UNIT = Decimal("0.01")


def load_tier_table(raw_tiers: Iterable[dict[str, Any]]) -> List[CommissionTier]:
    """Parses the configured tier table, lowest threshold first."""
    tiers = sorted(
        (CommissionTier.model_validate(t) for t in raw_tiers),
        key=lambda t: t.min_paid_referrals
    )
    if not tiers or tiers[0].min_paid_referrals != 0:
        raise ValueError("Commission tier table must start at 0 paid referrals")
    for tier in tiers:
        if tier.rate <= 0 or tier.rate + settings.PLATFORM_RATE >= 1:
            raise ValueError(f"Tier '{tier.tier_name}' rate {tier.rate} leaves no creator share")
    return tiers


TIER_TABLE: List[CommissionTier] = load_tier_table(settings.COMMISSION_TIERS)


def to_minor_units(value: Decimal) -> Decimal:
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def validate_sale_amount(sale_amount: Any) -> Decimal:
    """
    Rejects anything that is not a finite, non-negative amount in whole minor
    units below the hard ceiling. Never clamps.
    """
    if isinstance(sale_amount, bool) or sale_amount is None:
        raise InvalidAmount("Sale amount must be a number", details={"sale_amount": repr(sale_amount)})
    try:
        amount = sale_amount if isinstance(sale_amount, Decimal) else Decimal(str(sale_amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Sale amount must be a number", details={"sale_amount": repr(sale_amount)})

    if not amount.is_finite():
        raise InvalidAmount("Sale amount must be a finite number", details={"sale_amount": str(amount)})
    if amount < 0:
        raise InvalidAmount("Sale amount cannot be negative", details={"sale_amount": str(amount)})
    if amount > settings.MAX_SALE_AMOUNT:
        raise InvalidAmount(
            f"Sale amount exceeds maximum allowed ({settings.MAX_SALE_AMOUNT})",
            details={"sale_amount": str(amount)}
        )
    if amount != to_minor_units(amount):
        raise InvalidAmount(
            "Sale amount has more precision than the currency minor unit",
            details={"sale_amount": str(amount)}
        )
    return to_minor_units(amount)


def tier_for_count(paid_referrals: int, tiers: Sequence[CommissionTier] | None = None) -> CommissionTier:
    """Highest tier whose threshold does not exceed the paid-referral count."""
    tiers = tiers or TIER_TABLE
    current = tiers[0]
    for tier in tiers:
        if paid_referrals >= tier.min_paid_referrals:
            current = tier
    return current


def is_valid_custom_rate(rate: Decimal | None) -> bool:
    if rate is None:
        return False
    return settings.CUSTOM_RATE_MIN <= Decimal(rate) <= settings.CUSTOM_RATE_MAX


def resolve_rate(
    paid_referrals: int,
    custom_rate: Decimal | None = None,
    tiers: Sequence[CommissionTier] | None = None
) -> ResolvedRate:
    """A custom rate, when present and in bounds, always wins over the tier table."""
    if custom_rate is not None:
        if is_valid_custom_rate(custom_rate):
            return ResolvedRate(rate=Decimal(custom_rate), source="custom")
        logger.warning(f"Ignoring out-of-bounds custom rate {custom_rate}; falling back to tier lookup.")
    tier = tier_for_count(paid_referrals, tiers)
    return ResolvedRate(rate=tier.rate, source="tier", tier_name=tier.tier_name)


def calculate_commission(
    sale_amount: Any,
    referrer: Member | None = None,
    *,
    paid_referrals: int | None = None,
    custom_rate: Decimal | None = None,
    tiers: Sequence[CommissionTier] | None = None
) -> CommissionSplit:
    """
    Pure function: (sale amount, referrer) -> three-way split.
    The referrer's `total_referred` and `custom_rate` are used unless
    overridden by the keyword arguments.
    """
    amount = validate_sale_amount(sale_amount)

    if referrer is not None:
        if paid_referrals is None:
            paid_referrals = referrer.total_referred or 0
        if custom_rate is None:
            custom_rate = referrer.custom_rate
    resolved = resolve_rate(paid_referrals or 0, custom_rate, tiers)

    platform_rate = settings.PLATFORM_RATE
    creator_rate = Decimal(1) - resolved.rate - platform_rate

    member_share = to_minor_units(amount * resolved.rate)
    platform_share = to_minor_units(amount * platform_rate)
    creator_share = to_minor_units(amount * creator_rate)

    # Creator holds the largest share, so it absorbs the rounding remainder
    remainder = amount - (member_share + platform_share + creator_share)
    creator_share += remainder

    return CommissionSplit(
        sale_amount=amount,
        member_share=member_share,
        creator_share=creator_share,
        platform_share=platform_share,
        applied_rate=resolved.rate,
        applied_tier=resolved.tier_name,
        rate_source=resolved.source,
    )


def next_tier_info(paid_referrals: int, tiers: Sequence[CommissionTier] | None = None) -> TierProgress:
    """Progress toward the next tier, for display."""
    tiers = tiers or TIER_TABLE
    current = tier_for_count(paid_referrals, tiers)
    higher = [t for t in tiers if t.min_paid_referrals > current.min_paid_referrals]
    if not higher:
        return TierProgress(
            current_tier=current.tier_name,
            current_rate=current.rate,
            next_tier=None,
            next_rate=None,
            referrals_to_next_tier=0,
            progress_percent=100,
        )

    nxt = higher[0]
    range_size = nxt.min_paid_referrals - current.min_paid_referrals
    progress = round((paid_referrals - current.min_paid_referrals) / range_size * 100)
    return TierProgress(
        current_tier=current.tier_name,
        current_rate=current.rate,
        next_tier=nxt.tier_name,
        next_rate=nxt.rate,
        referrals_to_next_tier=nxt.min_paid_referrals - paid_referrals,
        progress_percent=max(0, min(100, progress)),
    )


# --- Custom rates ---

def _get_owned_member(db: Session, creator_id: int, member_id: int) -> Member:
    member = crud_member.get_member_by_id(db, member_id)
    if member is None or member.creator_id != creator_id:
        raise NotFound(
            f"Member {member_id} not found for creator {creator_id}",
            details={"member_id": member_id, "creator_id": creator_id}
        )
    return member


def set_custom_rate(
    db: Session,
    creator_id: int,
    member_id: int,
    rate: Decimal,
    reason: str | None = None,
    now: datetime | None = None
) -> Member:
    """Sets a creator-defined rate for one of the creator's own members."""
    if not is_valid_custom_rate(rate):
        raise InvalidCustomRate(
            f"Custom rate must be between {settings.CUSTOM_RATE_MIN} and {settings.CUSTOM_RATE_MAX}",
            details={"rate": str(rate)}
        )
    member = _get_owned_member(db, creator_id, member_id)
    previous_rate = member.custom_rate

    member.custom_rate = Decimal(rate)
    member.custom_rate_reason = reason
    member.custom_rate_set_by = creator_id
    member.custom_rate_set_at = now or utcnow()
    db.commit()
    db.refresh(member)

    logger.info(
        f"Custom rate set for member {member.id} ({member.referral_code}): "
        f"{previous_rate if previous_rate is not None else 'tier-based'} -> {rate}. Reason: {reason or '-'}"
    )
    return member


def remove_custom_rate(db: Session, creator_id: int, member_id: int) -> Member:
    """Reverts the member to tier-based rates."""
    member = _get_owned_member(db, creator_id, member_id)
    previous_rate = member.custom_rate

    member.custom_rate = None
    member.custom_rate_reason = None
    member.custom_rate_set_by = None
    member.custom_rate_set_at = None
    db.commit()
    db.refresh(member)

    tier = tier_for_count(member.total_referred)
    logger.info(
        f"Custom rate {previous_rate} removed for member {member.id}; "
        f"back to '{tier.tier_name}' tier ({tier.rate})"
    )
    return member
