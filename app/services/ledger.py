# app/services/ledger.py

"""
Ledger writer.

The Commission table is the event log; the counters on Member are a
materialized view of it. Both are written in the same transaction, counters
through SQL-side increments, so concurrent deliveries never lose updates.
The unique constraint on upstream_payment_id makes every payment count once.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import IngestionOutcome, InvalidAmount, InvalidPayload, NotFound
from app.crud import attribution as crud_attribution
from app.crud import commission as crud_commission
from app.crud import member as crud_member
from app.crud import refund as crud_refund
from app.models.commission import Commission
from app.models.creator import Creator
from app.models.member import Member
from app.schemas.commission import Commission as CommissionSchema
from app.schemas.consistency import ConsistencyReport
from app.schemas.ledger import LedgerResult, RefundShares
from app.schemas.member import MemberAggregates
from app.services import commission as commission_service
from app.services import consistency as consistency_service
from app.services.cache import AGGREGATES_TAG, LEADERBOARDS_TAG, LedgerCache, aggregates_key, community_tag, member_tag
from app.services.ranking import rank_change
from app.utils.dates import as_utc, start_of_month, utcnow

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ("initial", "recurring")
# Half a minor unit; absorbs float storage on backends without a native decimal type
MINOR_TOLERANCE = Decimal("0.005")


def _same_month(a: datetime, b: datetime) -> bool:
    return start_of_month(a) == start_of_month(b)


class LedgerRepository:
    """Single entry point for everything that writes commissions or counters."""

    def __init__(self, db: Session, cache: LedgerCache | None = None):
        self.db = db
        self.cache = cache

    # --- Writes ---

    def derive_payment_type(self, upstream_membership_id: str) -> str:
        """First commission of a membership is the initial one, all later ones recur."""
        existing = crud_commission.count_commissions_for_membership(self.db, upstream_membership_id)
        return "initial" if existing == 0 else "recurring"

    async def record_commission(
        self,
        upstream_payment_id: str,
        upstream_membership_id: str,
        sale_amount: Any,
        payment_type: str | None,
        referrer_member_id: int,
        creator_id: int,
        created_at: datetime | None = None
    ) -> LedgerResult:
        existing = crud_commission.get_commission_by_payment_id(self.db, upstream_payment_id)
        if existing:
            logger.info(f"Payment {upstream_payment_id} already recorded as commission {existing.id}. Ignoring replay.")
            return self._duplicate(existing)

        referrer = crud_member.get_member_by_id(self.db, referrer_member_id)
        if not referrer:
            raise NotFound(f"Referrer {referrer_member_id} not found", details={"member_id": referrer_member_id})

        # Raises InvalidAmount before anything is written
        split = commission_service.calculate_commission(sale_amount, referrer)

        if payment_type is None:
            payment_type = self.derive_payment_type(upstream_membership_id)
        if payment_type not in PAYMENT_TYPES:
            raise InvalidPayload(
                f"Unknown payment type '{payment_type}'",
                details={"payment_type": payment_type, "allowed": list(PAYMENT_TYPES)}
            )

        now = utcnow()
        commission_time = as_utc(created_at) if created_at else now
        previous_earnings = Decimal(referrer.lifetime_earnings or 0)
        previous_referred = referrer.total_referred or 0

        commission = Commission(
            upstream_payment_id=upstream_payment_id,
            upstream_membership_id=upstream_membership_id,
            sale_amount=split.sale_amount,
            member_share=split.member_share,
            creator_share=split.creator_share,
            platform_share=split.platform_share,
            payment_type=payment_type,
            status="paid",
            applied_rate=split.applied_rate,
            applied_tier=split.applied_tier,
            rate_source=split.rate_source,
            referrer_member_id=referrer.id,
            creator_id=creator_id,
            created_at=commission_time,
        )

        increments = {"lifetime_earnings": Member.lifetime_earnings + split.member_share}
        in_current_month = _same_month(commission_time, now)
        if in_current_month:
            increments["monthly_earnings"] = Member.monthly_earnings + split.member_share
        if payment_type == "initial":
            increments["total_referred"] = Member.total_referred + 1
            if in_current_month:
                increments["monthly_referred"] = Member.monthly_referred + 1

        creator_increments = {"total_revenue": Creator.total_revenue + split.creator_share}
        if in_current_month:
            creator_increments["monthly_revenue"] = Creator.monthly_revenue + split.creator_share
        if payment_type == "initial":
            creator_increments["total_referrals"] = Creator.total_referrals + 1

        try:
            self.db.add(commission)
            self.db.flush()
            self.db.execute(
                update(Member)
                .where(Member.id == referrer.id)
                .values(**increments)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(Creator)
                .where(Creator.id == creator_id)
                .values(**creator_increments)
                .execution_options(synchronize_session=False)
            )
            if payment_type == "initial":
                self._sync_tier(referrer.id)
                self._fill_conversion_value(upstream_membership_id, split.sale_amount)
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same payment committed first
            self.db.rollback()
            stored = crud_commission.get_commission_by_payment_id(self.db, upstream_payment_id)
            if stored is None:
                raise
            logger.info(f"Payment {upstream_payment_id} was recorded concurrently. Ignoring duplicate.")
            return self._duplicate(stored)

        self.db.refresh(commission)
        logger.info(
            f"Commission {commission.id} recorded for payment {upstream_payment_id}: "
            f"sale={split.sale_amount} member={split.member_share} creator={split.creator_share} "
            f"platform={split.platform_share} ({payment_type}, {split.rate_source} rate {split.applied_rate}) "
            f"-> referrer {referrer.id}"
        )
        await self._invalidate(referrer.id, creator_id)

        return LedgerResult(
            outcome=IngestionOutcome.PROCESSED.value,
            commission=CommissionSchema.model_validate(commission),
            previous_lifetime_earnings=previous_earnings,
            previous_total_referred=previous_referred,
        )

    async def reverse_commission(
        self,
        upstream_payment_id: str,
        reason: str | None = None,
        refund_amount: Any = None,
        upstream_refund_id: str | None = None
    ) -> LedgerResult:
        """
        Applies one refund to a commissioned payment.

        Without an amount the whole remainder is refunded. A partial refund
        takes back every share pro-rata (refund / sale) and leaves the
        commission in 'partial_refund'; the refund that exhausts the sale
        takes back exactly what is left and moves it to 'reversed'.
        Earnings and creator revenue go down; referral counts stay, the
        referral itself happened. Each refund id is applied once.
        """
        commission = crud_commission.get_commission_by_payment_id(self.db, upstream_payment_id)
        if not commission:
            raise NotFound(
                f"No commission for payment {upstream_payment_id}",
                details={"upstream_payment_id": upstream_payment_id}
            )

        requested = None
        if refund_amount is not None:
            requested = commission_service.validate_sale_amount(refund_amount)
        refund_id = upstream_refund_id or f"{upstream_payment_id}:{requested if requested is not None else 'full'}"

        if crud_refund.get_refund_by_upstream_id(self.db, refund_id):
            logger.info(f"Refund {refund_id} already applied to commission {commission.id}. Ignoring replay.")
            return self._duplicate(commission)
        if commission.status == "reversed":
            logger.info(f"Commission {commission.id} already fully reversed. Ignoring refund {refund_id}.")
            return self._duplicate(commission)

        sale = Decimal(commission.sale_amount)
        remaining = sale - Decimal(commission.refunded_amount or 0)
        amount = remaining if requested is None else requested
        if amount <= 0 or amount > remaining:
            raise InvalidAmount(
                f"Refund of {amount} on payment {upstream_payment_id} must be positive and at most the {remaining} not yet refunded",
                details={"refund_amount": str(amount), "refundable": str(remaining)}
            )
        full = amount == remaining
        shares = self._reversed_shares(commission, refund_id, amount, full)

        referrer = crud_member.get_member_by_id(self.db, commission.referrer_member_id)
        previous_earnings = Decimal(referrer.lifetime_earnings or 0)
        previous_referred = referrer.total_referred or 0

        now = utcnow()
        same_month = _same_month(commission.created_at, now)
        decrements = {"lifetime_earnings": Member.lifetime_earnings - shares.member_share_reversed}
        creator_decrements = {"total_revenue": Creator.total_revenue - shares.creator_share_reversed}
        if same_month:
            decrements["monthly_earnings"] = Member.monthly_earnings - shares.member_share_reversed
            creator_decrements["monthly_revenue"] = Creator.monthly_revenue - shares.creator_share_reversed

        commission_values = {
            "refunded_amount": Commission.refunded_amount + amount,
            "member_share_reversed": Commission.member_share_reversed + shares.member_share_reversed,
            "creator_share_reversed": Commission.creator_share_reversed + shares.creator_share_reversed,
            "platform_share_reversed": Commission.platform_share_reversed + shares.platform_share_reversed,
            "status": "reversed" if full else "partial_refund",
            "reversal_reason": reason,
        }
        if full:
            commission_values["reversed_at"] = now

        try:
            crud_refund.create_refund(
                self.db,
                upstream_refund_id=refund_id,
                upstream_payment_id=upstream_payment_id,
                commission_id=commission.id,
                refund_amount=amount,
                member_share_reversed=shares.member_share_reversed,
                creator_share_reversed=shares.creator_share_reversed,
                platform_share_reversed=shares.platform_share_reversed,
                reason=reason,
            )
            # Guard against a concurrent refund that already used up the sale
            flipped = self.db.execute(
                update(Commission)
                .where(
                    Commission.id == commission.id,
                    Commission.status != "reversed",
                    Commission.refunded_amount + amount <= Commission.sale_amount + MINOR_TOLERANCE,
                )
                .values(**commission_values)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                self.db.rollback()
                self.db.refresh(commission)
                logger.info(f"Commission {commission.id} was refunded concurrently; refund {refund_id} no longer fits.")
                return self._duplicate(commission)

            self.db.execute(
                update(Member)
                .where(Member.id == commission.referrer_member_id)
                .values(**decrements)
                .execution_options(synchronize_session=False)
            )
            self.db.execute(
                update(Creator)
                .where(Creator.id == commission.creator_id)
                .values(**creator_decrements)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError:
            # Same refund id delivered twice at once
            self.db.rollback()
            if crud_refund.get_refund_by_upstream_id(self.db, refund_id) is None:
                raise
            self.db.refresh(commission)
            logger.info(f"Refund {refund_id} was applied concurrently. Ignoring duplicate.")
            return self._duplicate(commission)

        self.db.refresh(commission)
        logger.info(
            f"Refund {refund_id} of {amount} applied to commission {commission.id} ({commission.status}): "
            f"-{shares.member_share_reversed} for referrer {commission.referrer_member_id}, "
            f"-{shares.creator_share_reversed} for creator {commission.creator_id}. Reason: {reason or '-'}"
        )
        await self._invalidate(commission.referrer_member_id, commission.creator_id)

        return LedgerResult(
            outcome=IngestionOutcome.PROCESSED.value,
            commission=CommissionSchema.model_validate(commission),
            refund=shares,
            previous_lifetime_earnings=previous_earnings,
            previous_total_referred=previous_referred,
        )

    @staticmethod
    def _reversed_shares(commission: Commission, refund_id: str, amount: Decimal, full: bool) -> RefundShares:
        member_left = Decimal(commission.member_share) - Decimal(commission.member_share_reversed or 0)
        creator_left = Decimal(commission.creator_share) - Decimal(commission.creator_share_reversed or 0)
        platform_left = Decimal(commission.platform_share) - Decimal(commission.platform_share_reversed or 0)
        if full:
            member, creator, platform = member_left, creator_left, platform_left
        else:
            ratio = amount / Decimal(commission.sale_amount)
            member = min(commission_service.to_minor_units(Decimal(commission.member_share) * ratio), member_left)
            platform = min(commission_service.to_minor_units(Decimal(commission.platform_share) * ratio), platform_left)
            # Creator absorbs rounding so the reversed shares add up to the refund
            creator = amount - member - platform
        return RefundShares(
            upstream_refund_id=refund_id,
            refund_amount=amount,
            member_share_reversed=commission_service.to_minor_units(member),
            creator_share_reversed=commission_service.to_minor_units(creator),
            platform_share_reversed=commission_service.to_minor_units(platform),
        )

    def _sync_tier(self, member_id: int) -> None:
        total_referred = self.db.query(Member.total_referred).filter(Member.id == member_id).scalar() or 0
        tier = commission_service.tier_for_count(total_referred)
        changed = self.db.execute(
            update(Member)
            .where(Member.id == member_id, Member.current_tier != tier.tier_name)
            .values(current_tier=tier.tier_name)
            .execution_options(synchronize_session=False)
        )
        if changed.rowcount:
            logger.info(f"Member {member_id} reached tier '{tier.tier_name}' with {total_referred} paid referrals.")

    def _fill_conversion_value(self, upstream_membership_id: str, sale_amount: Decimal) -> None:
        paying_member = crud_member.get_member_by_membership_id(self.db, upstream_membership_id)
        if paying_member and paying_member.attribution_click_id:
            crud_attribution.fill_conversion_value(self.db, paying_member.attribution_click_id, sale_amount)

    def _duplicate(self, commission: Commission) -> LedgerResult:
        return LedgerResult(
            outcome=IngestionOutcome.DUPLICATE_IGNORED.value,
            commission=CommissionSchema.model_validate(commission),
        )

    async def _invalidate(self, member_id: int, creator_id: int) -> None:
        if self.cache is None:
            return
        await self.cache.invalidate_tags(member_tag(member_id), community_tag(creator_id), LEADERBOARDS_TAG)

    # --- Reads ---

    def build_aggregates(self, member_id: int) -> MemberAggregates:
        member = crud_member.get_member_by_id(self.db, member_id)
        if not member:
            raise NotFound(f"Member {member_id} not found", details={"member_id": member_id})
        resolved = commission_service.resolve_rate(member.total_referred or 0, member.custom_rate)
        return MemberAggregates(
            member_id=member.id,
            referral_code=member.referral_code,
            username=member.username,
            creator_id=member.creator_id,
            member_origin=member.member_origin,
            lifetime_earnings=Decimal(member.lifetime_earnings or 0),
            monthly_earnings=Decimal(member.monthly_earnings or 0),
            total_referred=member.total_referred or 0,
            monthly_referred=member.monthly_referred or 0,
            current_tier=member.current_tier,
            effective_rate=resolved.rate,
            rate_source=resolved.source,
            global_earnings_rank=member.global_earnings_rank,
            global_referrals_rank=member.global_referrals_rank,
            community_rank=member.community_rank,
            global_earnings_rank_change=rank_change(member.global_earnings_rank, member.previous_global_earnings_rank),
            global_referrals_rank_change=rank_change(member.global_referrals_rank, member.previous_global_referrals_rank),
            community_rank_change=rank_change(member.community_rank, member.previous_community_rank),
        )

    async def get_aggregates(self, member_id: int) -> MemberAggregates:
        key = aggregates_key(member_id)
        if self.cache is not None:
            cached = await self.cache.get(key, MemberAggregates)
            if cached:
                return cached

        aggregates = self.build_aggregates(member_id)
        if self.cache is not None:
            await self.cache.set(
                key, aggregates,
                ttl=settings.AGGREGATES_CACHE_TTL_SECONDS,
                tags=[member_tag(member_id), community_tag(aggregates.creator_id), AGGREGATES_TAG]
            )
        return aggregates

    def reconcile(self, auto_fix: bool = False, now: datetime | None = None) -> ConsistencyReport:
        return consistency_service.verify_consistency(self.db, auto_fix=auto_fix, now=now)
