# tests/test_earnings.py

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.core.exceptions import NotFound
from app.services.earnings import get_earnings_history
from app.services.ledger import LedgerRepository

NOW = datetime(2026, 6, 15, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
async def history_member(db_session, member_factory):
    alice = member_factory(name="alice")
    ledger = LedgerRepository(db_session)
    await ledger.record_commission("pay_a", "mem_1", "100.00", None, alice.id, alice.creator_id,
                                   created_at=NOW - timedelta(days=2))
    await ledger.record_commission("pay_b", "mem_2", "50.00", None, alice.id, alice.creator_id,
                                   created_at=NOW - timedelta(hours=1))
    await ledger.record_commission("pay_c", "mem_3", "30.00", None, alice.id, alice.creator_id,
                                   created_at=NOW - timedelta(days=120))
    await ledger.record_commission("pay_d", "mem_4", "80.00", None, alice.id, alice.creator_id,
                                   created_at=NOW - timedelta(days=1))
    await ledger.reverse_commission("pay_d")
    return alice


async def test_daily_buckets(db_session, history_member):
    history = get_earnings_history(db_session, history_member.id, days=7, now=NOW)

    assert history.granularity == "day"
    assert [b.label for b in history.buckets][-3:] == ["2026-06-13", "2026-06-14", "2026-06-15"]
    by_label = {b.label: b for b in history.buckets}
    assert by_label["2026-06-13"].earnings == Decimal("10.00")
    assert by_label["2026-06-15"].earnings == Decimal("5.00")
    # Reversed commission is left out
    assert by_label["2026-06-14"].commissions == 0
    assert history.total == Decimal("15.00")


async def test_monthly_buckets(db_session, history_member):
    history = get_earnings_history(db_session, history_member.id, days=180, now=NOW)

    assert history.granularity == "month"
    by_label = {b.label: b for b in history.buckets}
    assert by_label["2026-02"].earnings == Decimal("3.00")
    assert by_label["2026-06"].earnings == Decimal("15.00")
    assert by_label["2026-04"].commissions == 0
    assert history.total == Decimal("18.00")


def test_unknown_member(db_session):
    with pytest.raises(NotFound):
        get_earnings_history(db_session, 404, days=7, now=NOW)


def test_days_must_be_positive(db_session, member_factory):
    alice = member_factory(name="alice")
    with pytest.raises(ValueError):
        get_earnings_history(db_session, alice.id, days=0, now=NOW)


async def test_partial_refund_is_netted_in_bucket(db_session, history_member):
    ledger = LedgerRepository(db_session)
    await ledger.reverse_commission("pay_a", refund_amount="20.00", upstream_refund_id="re_a")

    history = get_earnings_history(db_session, history_member.id, days=7, now=NOW)

    by_label = {b.label: b for b in history.buckets}
    assert by_label["2026-06-13"].earnings == Decimal("8.00")
    assert by_label["2026-06-13"].commissions == 1
    assert history.total == Decimal("13.00")
