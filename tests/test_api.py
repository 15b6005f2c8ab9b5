# tests/test_api.py

import pytest
from datetime import timedelta
from decimal import Decimal
from httpx import AsyncClient

from app.models.remediation import RemediationAction
from app.services.ledger import LedgerRepository
from app.utils.dates import utcnow


@pytest.fixture
async def referrer_with_sales(db_session, member_factory, ledger_cache):
    alice = member_factory(name="alice")
    member_factory(name="bob")
    ledger = LedgerRepository(db_session, ledger_cache)
    await ledger.record_commission("pay_1", "mem_f1", "49.99", None, alice.id, alice.creator_id)
    await ledger.record_commission("pay_2", "mem_f1", "49.99", None, alice.id, alice.creator_id)
    await ledger.record_commission(
        "pay_old", "mem_f2", "100.00", None, alice.id, alice.creator_id,
        created_at=utcnow() - timedelta(days=200)
    )
    return alice


# --- Read surfaces ---

async def test_member_aggregates_not_found(client: AsyncClient):
    response = await client.get("/api/v1/members/999/aggregates")
    assert response.status_code == 404


async def test_member_commissions(client: AsyncClient, referrer_with_sales):
    response = await client.get(f"/api/v1/members/{referrer_with_sales.id}/commissions")
    assert response.status_code == 200
    items = response.json()["items"]
    assert [i["upstream_payment_id"] for i in items] == ["pay_2", "pay_1", "pay_old"]

    since = (utcnow() - timedelta(days=30)).isoformat()
    recent = await client.get(f"/api/v1/members/{referrer_with_sales.id}/commissions", params={"start": since})
    assert [i["upstream_payment_id"] for i in recent.json()["items"]] == ["pay_2", "pay_1"]


async def test_earnings_history_daily(client: AsyncClient, referrer_with_sales):
    response = await client.get(f"/api/v1/members/{referrer_with_sales.id}/earnings-history", params={"days": 30})
    data = response.json()

    assert data["granularity"] == "day"
    assert len(data["buckets"]) == 30
    assert Decimal(data["total"]) == Decimal("10.00")
    assert Decimal(data["buckets"][-1]["earnings"]) == Decimal("10.00")
    assert data["buckets"][-1]["commissions"] == 2


async def test_earnings_history_monthly(client: AsyncClient, referrer_with_sales):
    response = await client.get(f"/api/v1/members/{referrer_with_sales.id}/earnings-history", params={"days": 365})
    data = response.json()

    assert data["granularity"] == "month"
    assert 12 <= len(data["buckets"]) <= 13
    assert Decimal(data["total"]) == Decimal("20.00")


async def test_tier_progress(client: AsyncClient, referrer_with_sales):
    response = await client.get(f"/api/v1/members/{referrer_with_sales.id}/tier-progress")
    data = response.json()
    assert data["current_tier"] == "starter"
    assert data["next_tier"] == "ambassador"
    assert data["referrals_to_next_tier"] == 48


async def test_leaderboard_endpoint(client: AsyncClient, admin_headers, referrer_with_sales):
    recompute = await client.post("/api/v1/admin/rankings/recompute", headers=admin_headers)
    assert recompute.status_code == 200
    assert recompute.json()["members_ranked"] == 2

    response = await client.get("/api/v1/leaderboards/earnings", params={"limit": 1})
    data = response.json()
    assert data["entries"][0]["member_id"] == referrer_with_sales.id
    assert data["entries"][0]["rank"] == 1

    assert (await client.get("/api/v1/leaderboards/community")).status_code == 400
    assert (await client.get("/api/v1/leaderboards/bogus")).status_code == 422


# --- Admin ---

async def test_admin_key_required(client: AsyncClient):
    missing = await client.post("/api/v1/admin/consistency/verify")
    wrong = await client.post("/api/v1/admin/consistency/verify", headers={"X-Admin-Key": "nope"})
    assert missing.status_code == 422
    assert wrong.status_code == 401


async def test_consistency_verify_and_fix(client: AsyncClient, admin_headers, db_session, referrer_with_sales):
    referrer_with_sales.lifetime_earnings = Decimal("1.00")
    db_session.commit()

    report = await client.post("/api/v1/admin/consistency/verify", headers=admin_headers)
    body = report.json()
    assert body["counts_by_kind"]["partial_write"] == 1
    assert body["fixed_count"] == 0

    fixed = await client.post("/api/v1/admin/consistency/verify", params={"auto_fix": "true"}, headers=admin_headers)
    assert fixed.json()["fixed_count"] >= 1
    assert db_session.query(RemediationAction).count() >= 1


async def test_custom_rate_endpoints(client: AsyncClient, admin_headers, referrer_with_sales):
    url = f"/api/v1/admin/creators/{referrer_with_sales.creator_id}/members/{referrer_with_sales.id}/custom-rate"

    response = await client.put(url, json={"rate": "0.22", "reason": "launch partner"}, headers=admin_headers)
    assert response.status_code == 200
    assert Decimal(response.json()["effective_rate"]) == Decimal("0.22")
    assert response.json()["rate_source"] == "custom"

    listing = await client.get(f"/api/v1/admin/creators/{referrer_with_sales.creator_id}/custom-rates", headers=admin_headers)
    assert [m["member_id"] for m in listing.json()] == [referrer_with_sales.id]

    too_high = await client.put(url, json={"rate": "0.35"}, headers=admin_headers)
    assert too_high.status_code == 422
    assert too_high.json()["error_code"] == "InvalidCustomRate"

    removed = await client.delete(url, headers=admin_headers)
    assert removed.json()["rate_source"] == "tier"

    other_creator = await client.put(
        f"/api/v1/admin/creators/9999/members/{referrer_with_sales.id}/custom-rate",
        json={"rate": "0.20"}, headers=admin_headers,
    )
    assert other_creator.status_code == 404


async def test_task_listing(client: AsyncClient, admin_headers):
    response = await client.get("/api/v1/admin/tasks", headers=admin_headers)
    names = {t["task_name"] for t in response.json()}
    assert names == {"recompute_rankings", "verify_consistency", "monthly_reset"}


async def test_run_ranking_task(client: AsyncClient, admin_headers, db_session, referrer_with_sales):
    response = await client.post("/api/v1/admin/tasks/run", json={"task_name": "recompute_rankings"}, headers=admin_headers)
    assert response.status_code == 202

    db_session.expire_all()
    assert referrer_with_sales.global_earnings_rank == 1

    unknown = await client.post("/api/v1/admin/tasks/run", json={"task_name": "drop_tables"}, headers=admin_headers)
    assert unknown.status_code == 422
