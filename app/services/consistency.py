# app/services/consistency.py

"""
Consistency verifier.

Re-derives the counters on Member and Creator from the Commission log, the
Refund rows and the referral links between members, and reports where the
stored values disagree. Normal runs only read. With auto_fix=True the
counter fields are rewritten from the derived values and every correction is
recorded as a RemediationAction.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Tuple
from sqlalchemy.orm import Session

from app.core.config import settings
from app.crud import attribution as crud_attribution
from app.crud import commission as crud_commission
from app.crud import creator as crud_creator
from app.crud import member as crud_member
from app.crud import refund as crud_refund
from app.models.attribution import AttributionClick
from app.models.commission import Commission
from app.models.creator import Creator
from app.models.member import Member
from app.models.remediation import RemediationAction
from app.schemas.consistency import ConsistencyReport, Discrepancy
from app.services import commission as commission_service
from app.services.ranking import BOARDS, assign_competition_ranks, is_test_company
from app.utils.dates import as_utc, start_of_month, utcnow

logger = logging.getLogger(__name__)
remediation_logger = logging.getLogger("app.remediation")

SEVERITY_WEIGHTS = {"critical": 10, "warning": 2, "info": 0}

# Fields the verifier may rewrite
FIXABLE_FIELDS = ("lifetime_earnings", "monthly_earnings", "total_referred", "monthly_referred", "current_tier")
CREATOR_FIXABLE_FIELDS = ("total_referrals", "total_revenue", "monthly_revenue")
MONEY_FIELDS = ("lifetime_earnings", "monthly_earnings", "total_revenue", "monthly_revenue")


class _Expected:
    """Values every stored counter should hold, derived from the logs."""

    def __init__(self, db: Session, month_start: datetime):
        self.lifetime = crud_commission.get_net_member_earnings(db)
        self.monthly = crud_commission.get_net_member_earnings(db, since=month_start)
        self.earning_commissions = crud_commission.count_earning_commissions_by_member(db)
        self.referred = crud_member.get_referred_counts(db)
        self.referred_monthly = crud_member.get_referred_counts(db, since=month_start)
        self.revenue = crud_commission.get_net_creator_revenue(db)
        self.revenue_monthly = crud_commission.get_net_creator_revenue(db, since=month_start)

    def member_value(self, member: Member, field: str):
        if field == "lifetime_earnings":
            return _money(self.lifetime.get(member.id))
        if field == "monthly_earnings":
            return _money(self.monthly.get(member.id))
        if field == "total_referred":
            return self.referred.get(member.referral_code, 0)
        if field == "monthly_referred":
            return self.referred_monthly.get(member.referral_code, 0)
        raise KeyError(field)


def _money(value) -> Decimal:
    return commission_service.to_minor_units(Decimal(value or 0))


def _differs(stored: Decimal, expected: Decimal) -> bool:
    return abs(stored - expected) > settings.CONSISTENCY_TOLERANCE


def _check_splits(commissions: List[Commission], report: List[Discrepancy]) -> None:
    for c in commissions:
        total = _money(c.member_share) + _money(c.creator_share) + _money(c.platform_share)
        if total != _money(c.sale_amount):
            report.append(Discrepancy(
                kind="split_mismatch",
                severity="critical",
                member_id=c.referrer_member_id,
                commission_id=c.id,
                stored=str(total),
                expected=str(_money(c.sale_amount)),
                detail=f"Shares of commission {c.id} add up to {total}, sale was {_money(c.sale_amount)}",
            ))


def _check_refunds(
    commissions: List[Commission],
    refund_totals: Dict[int, Tuple[Decimal, Decimal]],
    report: List[Discrepancy]
) -> None:
    """Running refund totals on a commission must match its Refund rows."""
    for c in commissions:
        amount, member_reversed = refund_totals.get(c.id, (Decimal("0"), Decimal("0")))
        stored_amount = _money(c.refunded_amount)
        stored_member = _money(c.member_share_reversed)
        if stored_amount != _money(amount) or stored_member != _money(member_reversed):
            report.append(Discrepancy(
                kind="refund_mismatch",
                severity="critical",
                member_id=c.referrer_member_id,
                commission_id=c.id,
                field="refunded_amount",
                stored=f"{stored_amount}/{stored_member}",
                expected=f"{_money(amount)}/{_money(member_reversed)}",
                detail=f"Commission {c.id} records refunds of {stored_amount} (member -{stored_member}), refund rows say {_money(amount)} (member -{_money(member_reversed)})",
            ))
        elif c.status == "reversed" and stored_amount != _money(c.sale_amount):
            report.append(Discrepancy(
                kind="refund_mismatch",
                severity="warning",
                member_id=c.referrer_member_id,
                commission_id=c.id,
                field="status",
                stored=c.status,
                expected="partial_refund" if stored_amount else "paid",
                detail=f"Commission {c.id} is reversed but only {stored_amount} of {_money(c.sale_amount)} was refunded",
            ))


def _structural_discrepancies(member: Member, expected: _Expected) -> List[Discrepancy]:
    """Counter shapes that can never be right: negatives, monthly above lifetime."""
    found: List[Discrepancy] = []
    for field in ("lifetime_earnings", "monthly_earnings", "total_referred", "monthly_referred"):
        stored = getattr(member, field) or 0
        if stored < 0:
            found.append(Discrepancy(
                kind="negative_counter",
                severity="critical",
                member_id=member.id,
                field=field,
                stored=str(_money(stored) if field in MONEY_FIELDS else stored),
                expected=str(expected.member_value(member, field)),
                detail=f"Member {member.id} has negative {field} {stored}",
            ))
    for monthly_field, total_field in (("monthly_referred", "total_referred"), ("monthly_earnings", "lifetime_earnings")):
        monthly = getattr(member, monthly_field) or 0
        total = getattr(member, total_field) or 0
        if monthly > total:
            found.append(Discrepancy(
                kind="monthly_exceeds_total",
                severity="warning",
                member_id=member.id,
                field=monthly_field,
                stored=str(monthly),
                expected=str(expected.member_value(member, monthly_field)),
                detail=f"Member {member.id} has {monthly_field}={monthly} above {total_field}={total}",
            ))
    return found


def _counter_discrepancies(member: Member, expected: _Expected) -> List[Discrepancy]:
    found = _structural_discrepancies(member, expected)

    expected_lifetime = expected.member_value(member, "lifetime_earnings")
    stored_lifetime = _money(member.lifetime_earnings)
    if _differs(stored_lifetime, expected_lifetime):
        has_commissions = expected.earning_commissions.get(member.id, 0) > 0
        partial = (has_commissions and stored_lifetime < expected_lifetime) or (not has_commissions and stored_lifetime > 0)
        found.append(Discrepancy(
            kind="partial_write" if partial else "lifetime_earnings_mismatch",
            severity="critical" if partial else "warning",
            member_id=member.id,
            field="lifetime_earnings",
            stored=str(stored_lifetime),
            expected=str(expected_lifetime),
            detail=(
                f"Commissions net of refunds total {expected_lifetime} but member {member.id} stores {stored_lifetime}"
                if has_commissions else
                f"Member {member.id} stores earnings {stored_lifetime} without any paid commission"
            ),
        ))

    expected_monthly = expected.member_value(member, "monthly_earnings")
    stored_monthly = _money(member.monthly_earnings)
    if _differs(stored_monthly, expected_monthly):
        found.append(Discrepancy(
            kind="monthly_earnings_mismatch",
            severity="warning",
            member_id=member.id,
            field="monthly_earnings",
            stored=str(stored_monthly),
            expected=str(expected_monthly),
            detail=f"Commissions this month total {expected_monthly}, member {member.id} stores {stored_monthly}",
        ))

    for field in ("total_referred", "monthly_referred"):
        should_be = expected.member_value(member, field)
        stored = getattr(member, field) or 0
        if stored != should_be:
            found.append(Discrepancy(
                kind="referral_count_mismatch",
                severity="warning",
                member_id=member.id,
                field=field,
                stored=str(stored),
                expected=str(should_be),
                detail=f"{should_be} members signed up with {member.referral_code}, {field} is {stored}",
            ))

    referred = expected.member_value(member, "total_referred")
    expected_tier = commission_service.tier_for_count(referred).tier_name
    if member.current_tier != expected_tier:
        found.append(Discrepancy(
            kind="tier_mismatch",
            severity="warning",
            member_id=member.id,
            field="current_tier",
            stored=member.current_tier,
            expected=expected_tier,
            detail=f"{referred} referrals map to tier '{expected_tier}'",
        ))

    if member.member_origin == "referred" and member.attribution_click_id is None:
        found.append(Discrepancy(
            kind="unmatched_conversion",
            severity="info",
            member_id=member.id,
            detail=f"Member {member.id} was referred by {member.referred_by} without a matching click",
        ))
    return found


def _creator_discrepancies(creator: Creator, community: List[Member], expected: _Expected) -> List[Discrepancy]:
    found: List[Discrepancy] = []

    for field, should_be in (
        ("total_revenue", _money(expected.revenue.get(creator.id))),
        ("monthly_revenue", _money(expected.revenue_monthly.get(creator.id))),
    ):
        stored = _money(getattr(creator, field))
        if stored < 0:
            found.append(Discrepancy(
                kind="negative_counter",
                severity="critical",
                creator_id=creator.id,
                field=field,
                stored=str(stored),
                expected=str(should_be),
                detail=f"Creator {creator.id} has negative {field} {stored}",
            ))
        elif _differs(stored, should_be):
            found.append(Discrepancy(
                kind="creator_revenue_mismatch",
                severity="warning",
                creator_id=creator.id,
                field=field,
                stored=str(stored),
                expected=str(should_be),
                detail=f"Creator shares net of refunds total {should_be}, creator {creator.id} stores {stored}",
            ))

    expected_referrals = sum(expected.referred.get(m.referral_code, 0) for m in community)
    stored_referrals = creator.total_referrals or 0
    if stored_referrals != expected_referrals:
        found.append(Discrepancy(
            kind="creator_referral_mismatch",
            severity="warning",
            creator_id=creator.id,
            field="total_referrals",
            stored=str(stored_referrals),
            expected=str(expected_referrals),
            detail=f"Members of creator {creator.id} referred {expected_referrals} members, total_referrals is {stored_referrals}",
        ))
    return found


def _rank_discrepancies(rows: List[tuple]) -> List[Discrepancy]:
    ranked = [m for m, company_id in rows if not is_test_company(company_id)]
    expected: Dict[str, Dict[int, int]] = {
        "earnings": assign_competition_ranks((m.id, _money(m.lifetime_earnings), m.created_at) for m in ranked),
        "referrals": assign_competition_ranks((m.id, m.total_referred or 0, m.created_at) for m in ranked),
        "community": {},
    }
    by_community: Dict[int, List[Member]] = defaultdict(list)
    for m in ranked:
        by_community[m.creator_id].append(m)
    for community_members in by_community.values():
        expected["community"].update(assign_competition_ranks(
            (m.id, m.total_referred or 0, m.created_at) for m in community_members
        ))

    found: List[Discrepancy] = []
    for board, (_, rank_attr, _) in BOARDS.items():
        for m in ranked:
            stored = getattr(m, rank_attr)
            if stored != expected[board][m.id]:
                found.append(Discrepancy(
                    kind="rank_mismatch",
                    severity="info",
                    member_id=m.id,
                    field=rank_attr,
                    stored=None if stored is None else str(stored),
                    expected=str(expected[board][m.id]),
                    detail=f"Stored {board} rank is stale until the next recompute",
                ))
    return found


def _click_discrepancies(clicks: List[AttributionClick]) -> List[Discrepancy]:
    found: List[Discrepancy] = []
    for click in clicks:
        if click.converted_at is None:
            detail = f"Click {click.id} is converted but has no conversion time"
        elif as_utc(click.converted_at) > as_utc(click.expires_at):
            detail = f"Click {click.id} converted at {click.converted_at} after expiry {click.expires_at}"
        elif as_utc(click.converted_at) < as_utc(click.created_at):
            detail = f"Click {click.id} converted before it was created"
        else:
            continue
        found.append(Discrepancy(kind="click_integrity", severity="warning", click_id=click.id, detail=detail))
    return found


def _fix_value(field: str, expected: str):
    if field in MONEY_FIELDS:
        return Decimal(expected)
    if field == "current_tier":
        return expected
    return int(expected)


def _apply_fixes(
    db: Session,
    members: Dict[int, Member],
    creators: Dict[int, Creator],
    discrepancies: List[Discrepancy]
) -> int:
    fixed = 0
    done = set()
    for d in discrepancies:
        if d.member_id is not None and d.creator_id is None and d.field in FIXABLE_FIELDS:
            target, key = members[d.member_id], ("member", d.member_id, d.field)
        elif d.creator_id is not None and d.field in CREATOR_FIXABLE_FIELDS:
            target, key = creators[d.creator_id], ("creator", d.creator_id, d.field)
        else:
            continue
        if key in done:
            # Same field flagged by more than one check
            d.fixed = True
            continue

        setattr(target, d.field, _fix_value(d.field, d.expected))
        db.add(RemediationAction(
            member_id=d.member_id if key[0] == "member" else None,
            creator_id=d.creator_id,
            field=d.field,
            stored_value=d.stored,
            expected_value=d.expected,
            discrepancy_kind=d.kind,
            created_at=utcnow(),
        ))
        done.add(key)
        d.fixed = True
        fixed += 1
        remediation_logger.warning(
            f"{key[0]}={key[1]} field={d.field} stored={d.stored} expected={d.expected} kind={d.kind}"
        )
    if fixed:
        db.commit()
    return fixed


def verify_consistency(db: Session, auto_fix: bool = False, now: datetime | None = None) -> ConsistencyReport:
    now = as_utc(now) if now else utcnow()
    month_start = start_of_month(now)

    rows = crud_member.get_members_with_company(db)
    members = {m.id: m for m, _ in rows}
    creators = {c.id: c for c in crud_creator.get_all_creators(db)}
    commissions = crud_commission.get_all_commissions(db)
    clicks = crud_attribution.get_converted_clicks(db)
    expected = _Expected(db, month_start)

    discrepancies: List[Discrepancy] = []
    _check_splits(commissions, discrepancies)
    _check_refunds(commissions, crud_refund.get_refund_totals_by_commission(db), discrepancies)

    community: Dict[int, List[Member]] = defaultdict(list)
    for member in members.values():
        community[member.creator_id].append(member)
        discrepancies.extend(_counter_discrepancies(member, expected))
    for creator in creators.values():
        discrepancies.extend(_creator_discrepancies(creator, community[creator.id], expected))

    discrepancies.extend(_rank_discrepancies(rows))
    discrepancies.extend(_click_discrepancies(clicks))

    penalty = sum(SEVERITY_WEIGHTS[d.severity] for d in discrepancies)
    fixed_count = _apply_fixes(db, members, creators, discrepancies) if auto_fix else 0

    report = ConsistencyReport(
        checked_at=now,
        auto_fix=auto_fix,
        members_checked=len(members),
        creators_checked=len(creators),
        commissions_checked=len(commissions),
        clicks_checked=len(clicks),
        discrepancies=discrepancies,
        counts_by_kind=dict(Counter(d.kind for d in discrepancies)),
        counts_by_severity=dict(Counter(d.severity for d in discrepancies)),
        fixed_count=fixed_count,
        health_score=max(0, 100 - penalty),
    )

    if any(d.severity == "critical" for d in discrepancies):
        logger.error(f"Consistency check found {len(discrepancies)} discrepancies, health score {report.health_score}: {report.counts_by_kind}")
    elif discrepancies:
        logger.warning(f"Consistency check found {len(discrepancies)} discrepancies, health score {report.health_score}: {report.counts_by_kind}")
    else:
        logger.info(f"Consistency check passed for {len(members)} members, {len(creators)} creators and {len(commissions)} commissions.")
    return report
