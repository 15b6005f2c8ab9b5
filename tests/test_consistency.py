# tests/test_consistency.py

import logging
import pytest
from datetime import timedelta
from decimal import Decimal

from app.models.attribution import AttributionClick
from app.models.commission import Commission
from app.models.creator import Creator
from app.models.remediation import RemediationAction
from app.services import ranking as ranking_service
from app.services.consistency import verify_consistency
from app.services.ledger import LedgerRepository
from app.utils.dates import utcnow


def _kinds(report, severity=None):
    return sorted(
        d.kind for d in report.discrepancies
        if d.kind != "rank_mismatch" and (severity is None or d.severity == severity)
    )


def _referred(db, member_factory, name, referrer, membership_id):
    """A member who signed up through a converted click on the referrer's link."""
    now = utcnow()
    click = AttributionClick(
        referral_code=referrer.referral_code, fingerprint=f"fp_{name}", origin_hash="unknown",
        created_at=now - timedelta(hours=1), expires_at=now + timedelta(days=30),
        converted=True, converted_at=now,
    )
    db.add(click)
    db.commit()
    member = member_factory(name=name, referred_by=referrer.referral_code, membership_id=membership_id)
    member.attribution_click_id = click.id
    db.commit()
    return member


@pytest.fixture
async def populated(db_session, member_factory, ledger_cache):
    """Two referrers, each with one referred member and a few commissions, ranked."""
    alice = member_factory(name="alice")
    bob = member_factory(name="bob")
    _referred(db_session, member_factory, "carol", alice, "mem_a1")
    _referred(db_session, member_factory, "dave", bob, "mem_b1")
    ledger = LedgerRepository(db_session, ledger_cache)
    await ledger.record_commission("pay_1", "mem_a1", "49.99", None, alice.id, alice.creator_id)
    await ledger.record_commission("pay_2", "mem_a1", "49.99", None, alice.id, alice.creator_id)
    await ledger.record_commission("pay_3", "mem_b1", "100.00", None, bob.id, bob.creator_id)
    ranking_service.recompute_all_rankings(db_session)
    db_session.expire_all()
    return alice, bob


async def test_clean_ledger(db_session, populated):
    report = verify_consistency(db_session)

    assert report.discrepancies == []
    assert report.health_score == 100
    assert report.members_checked == 4
    assert report.creators_checked == 1
    assert report.commissions_checked == 3
    assert report.is_consistent


async def test_partial_write_is_critical(db_session, populated):
    alice, _ = populated
    alice.lifetime_earnings = Decimal("5.00")
    db_session.commit()

    report = verify_consistency(db_session)

    partial = [d for d in report.discrepancies if d.kind == "partial_write"]
    assert len(partial) == 1
    assert partial[0].severity == "critical"
    assert partial[0].member_id == alice.id
    assert partial[0].expected == "10.00"
    assert report.health_score < 100
    assert not report.is_consistent


async def test_counters_without_commissions(db_session, member_factory):
    lonely = member_factory(name="lonely")
    lonely.lifetime_earnings = Decimal("12.00")
    db_session.commit()

    report = verify_consistency(db_session)
    assert "partial_write" in _kinds(report, "critical")


async def test_drift_is_reported_by_kind(db_session, populated):
    alice, bob = populated
    alice.lifetime_earnings = Decimal("25.00")
    alice.monthly_earnings = Decimal("1.00")
    bob.total_referred = 7
    db_session.commit()

    report = verify_consistency(db_session)

    assert _kinds(report) == [
        "lifetime_earnings_mismatch",
        "monthly_earnings_mismatch",
        "referral_count_mismatch",
    ]
    assert report.fixed_count == 0
    db_session.refresh(alice)
    # Read-only without auto_fix
    assert alice.lifetime_earnings == Decimal("25.00")


async def test_tier_mismatch(db_session, populated):
    alice, _ = populated
    alice.current_tier = "elite"
    db_session.commit()

    report = verify_consistency(db_session)
    tier = [d for d in report.discrepancies if d.kind == "tier_mismatch"]
    assert tier[0].stored == "elite"
    assert tier[0].expected == "starter"


async def test_auto_fix_rewrites_counters_and_records_actions(db_session, populated, caplog):
    alice, bob = populated
    alice.lifetime_earnings = Decimal("25.00")
    bob.total_referred = 7
    bob.monthly_referred = 7
    db_session.commit()

    with caplog.at_level(logging.WARNING, logger="app.remediation"):
        report = verify_consistency(db_session, auto_fix=True)

    assert report.fixed_count == 3
    assert all(d.fixed for d in report.discrepancies if d.field in ("lifetime_earnings", "total_referred", "monthly_referred"))

    actions = db_session.query(RemediationAction).order_by(RemediationAction.id).all()
    assert {(a.member_id, a.field) for a in actions} == {
        (alice.id, "lifetime_earnings"), (bob.id, "total_referred"), (bob.id, "monthly_referred"),
    }
    assert any("field=lifetime_earnings" in r.getMessage() for r in caplog.records)

    db_session.expire_all()
    assert alice.lifetime_earnings == Decimal("10.00")
    assert bob.total_referred == 1

    again = verify_consistency(db_session)
    assert _kinds(again, "warning") == []
    assert _kinds(again, "critical") == []


async def test_split_mismatch(db_session, populated):
    commission = db_session.query(Commission).filter(Commission.upstream_payment_id == "pay_3").one()
    commission.creator_share = Decimal("61.99")
    db_session.commit()

    report = verify_consistency(db_session)
    split = [d for d in report.discrepancies if d.kind == "split_mismatch"]
    assert split[0].commission_id == commission.id
    assert split[0].severity == "critical"


async def test_unmatched_conversion_is_info_only(db_session, populated, member_factory):
    alice, _ = populated
    member_factory(name="walkin", referred_by=alice.referral_code)

    report = verify_consistency(db_session, auto_fix=True)
    unmatched = [d for d in report.discrepancies if d.kind == "unmatched_conversion"]
    assert len(unmatched) == 1
    assert unmatched[0].severity == "info"
    assert unmatched[0].fixed is False


async def test_click_integrity(db_session, populated):
    alice, _ = populated
    now = utcnow()
    db_session.add_all([
        AttributionClick(
            referral_code=alice.referral_code, fingerprint="a", origin_hash="unknown",
            created_at=now, expires_at=now + timedelta(days=30), converted=True, converted_at=None,
        ),
        AttributionClick(
            referral_code=alice.referral_code, fingerprint="b", origin_hash="unknown",
            created_at=now - timedelta(days=40), expires_at=now - timedelta(days=10),
            converted=True, converted_at=now,
        ),
    ])
    db_session.commit()

    report = verify_consistency(db_session)
    assert report.counts_by_kind.get("click_integrity") == 2


async def test_stale_ranks_are_reported(db_session, populated):
    alice, _ = populated
    alice.global_earnings_rank = 9
    db_session.commit()

    report = verify_consistency(db_session)
    stale = [d for d in report.discrepancies if d.kind == "rank_mismatch"]
    assert [(d.member_id, d.field) for d in stale] == [(alice.id, "global_earnings_rank")]


async def test_referral_count_comes_from_referred_members(db_session, member_factory):
    referrer = member_factory(name="zed")
    _referred(db_session, member_factory, "yan", referrer, "mem_yan")

    report = verify_consistency(db_session)

    referral = {d.field: d for d in report.discrepancies if d.kind == "referral_count_mismatch"}
    assert referral["total_referred"].member_id == referrer.id
    assert referral["total_referred"].stored == "0"
    assert referral["total_referred"].expected == "1"
    assert referral["monthly_referred"].expected == "1"
    creator = [d for d in report.discrepancies if d.kind == "creator_referral_mismatch"]
    assert creator[0].expected == "1"


async def test_drift_within_tolerance_is_not_reported(db_session, populated):
    alice, _ = populated
    alice.lifetime_earnings = Decimal("10.01")
    db_session.commit()

    assert _kinds(verify_consistency(db_session)) == []

    alice.lifetime_earnings = Decimal("10.02")
    db_session.commit()
    assert _kinds(verify_consistency(db_session)) == ["lifetime_earnings_mismatch"]


async def test_creator_revenue_mismatch_is_fixed(db_session, populated):
    creator = db_session.query(Creator).one()
    expected_total = sum(
        (c.creator_share for c in db_session.query(Commission).all()), Decimal("0")
    )
    creator.total_revenue = Decimal("999.00")
    creator.total_referrals = 5
    db_session.commit()

    report = verify_consistency(db_session, auto_fix=True)

    revenue = [d for d in report.discrepancies if d.kind == "creator_revenue_mismatch"]
    assert [(d.creator_id, d.field) for d in revenue] == [(creator.id, "total_revenue")]
    assert revenue[0].expected == str(expected_total)
    assert report.counts_by_kind["creator_referral_mismatch"] == 1

    actions = db_session.query(RemediationAction).filter(RemediationAction.creator_id == creator.id).all()
    assert {a.field for a in actions} == {"total_revenue", "total_referrals"}
    assert all(a.member_id is None for a in actions)

    db_session.expire_all()
    assert creator.total_revenue == expected_total
    assert creator.total_referrals == 2


async def test_creator_revenue_is_net_of_refunds(db_session, populated, ledger_cache):
    ledger = LedgerRepository(db_session, ledger_cache)
    await ledger.reverse_commission("pay_3", refund_amount="10.00", upstream_refund_id="re_1")

    report = verify_consistency(db_session)
    assert _kinds(report) == []


async def test_negative_counter_is_critical_and_fixed_once(db_session, populated):
    _, bob = populated
    bob.monthly_referred = -1
    db_session.commit()

    report = verify_consistency(db_session, auto_fix=True)

    negative = [d for d in report.discrepancies if d.kind == "negative_counter"]
    assert negative[0].severity == "critical"
    assert negative[0].field == "monthly_referred"
    assert negative[0].expected == "1"
    assert all(d.fixed for d in report.discrepancies if d.field == "monthly_referred")
    assert report.fixed_count == 1
    assert db_session.query(RemediationAction).count() == 1

    db_session.expire_all()
    assert bob.monthly_referred == 1


async def test_monthly_above_total(db_session, populated):
    alice, _ = populated
    alice.monthly_referred = 5
    db_session.commit()

    report = verify_consistency(db_session)

    exceeds = [d for d in report.discrepancies if d.kind == "monthly_exceeds_total"]
    assert len(exceeds) == 1
    assert exceeds[0].member_id == alice.id
    assert exceeds[0].field == "monthly_referred"
    assert exceeds[0].severity == "warning"


async def test_refund_rows_must_match_commission_totals(db_session, populated, ledger_cache):
    ledger = LedgerRepository(db_session, ledger_cache)
    await ledger.reverse_commission("pay_3", refund_amount="10.00", upstream_refund_id="re_1")
    commission = db_session.query(Commission).filter(Commission.upstream_payment_id == "pay_3").one()
    commission.refunded_amount = Decimal("0")
    db_session.commit()

    report = verify_consistency(db_session)
    mismatch = [d for d in report.discrepancies if d.kind == "refund_mismatch"]
    assert mismatch[0].commission_id == commission.id
    assert mismatch[0].severity == "critical"
