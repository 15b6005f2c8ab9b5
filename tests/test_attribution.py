# tests/test_attribution.py

import hashlib
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.core.exceptions import NotFound
from app.crud import attribution as crud_attribution
from app.crud import member as crud_member
from app.services import attribution as attribution_service
from app.services import conversion as conversion_service
from app.services.referral_code import REFERRAL_CODE_PATTERN, generate_referral_code, is_valid_referral_code
from app.utils.dates import as_utc

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(days=30)


# --- Referral codes ---

@pytest.mark.parametrize("name, prefix", [
    ("Mike", "MIKE-"), ("mike smith", "MIKE-"), ("anna@example.com", "ANNA-"),
    ("", "USER-"), (None, "USER-"), ("Maximilianus", "MAXIMILIAN-"), ("Émile", "MILE-"),
])
def test_generate_referral_code(name, prefix):
    code = generate_referral_code(name)
    assert code.startswith(prefix)
    assert REFERRAL_CODE_PATTERN.match(code)
    assert not set(code.split("-")[1]) & set("01IO")


def test_referral_code_validation():
    assert is_valid_referral_code("MIKE-A2X9K7")
    assert not is_valid_referral_code("mike-a2x9k7")
    assert not is_valid_referral_code("MIKE-A2X9")
    assert not is_valid_referral_code(None)


# --- Origin hashing ---

def test_hash_origin_uses_first_forwarded_address_without_port():
    expected = hashlib.sha256("203.0.113.7test-salt".encode()).hexdigest()[:16]

    assert attribution_service.hash_origin("203.0.113.7") == expected
    assert attribution_service.hash_origin("203.0.113.7:4431") == expected
    assert attribution_service.hash_origin("203.0.113.7, 10.0.0.1") == expected
    assert len(expected) == 16


@pytest.mark.parametrize("raw", [None, "", " , 10.0.0.1"])
def test_missing_origin_degrades_to_unknown(raw):
    assert attribution_service.hash_origin(raw) == "unknown"


def test_hash_failure_degrades_to_unknown(mocker):
    mocker.patch("app.services.attribution.hashlib.sha256", side_effect=RuntimeError("boom"))
    assert attribution_service.hash_origin("203.0.113.7") == "unknown"


def test_extract_real_origin_prefers_forwarded_for():
    headers = {"x-real-ip": "198.51.100.2", "x-forwarded-for": "203.0.113.7, 10.0.0.1"}
    assert attribution_service.extract_real_origin(headers) == "203.0.113.7, 10.0.0.1"
    assert attribution_service.extract_real_origin({"cf-connecting-ip": "198.51.100.9"}) == "198.51.100.9"
    assert attribution_service.extract_real_origin({}) is None


def test_generate_fingerprint():
    fp = attribution_service.generate_fingerprint("Mozilla/5.0", "203.0.113.7")
    assert fp == hashlib.sha256("Mozilla/5.0|203.0.113.7".encode()).hexdigest()[:32]
    assert attribution_service.generate_fingerprint(None, None) != fp


# --- Clicks ---

def test_record_click_sets_window(db_session, member_factory):
    referrer = member_factory(name="alice")

    click = attribution_service.record_click(db_session, referrer.referral_code, "fp-1", "203.0.113.7", now=T0)

    assert click.converted is False
    assert as_utc(click.created_at) == T0
    assert as_utc(click.expires_at) == T0 + WINDOW
    assert click.origin_hash != "unknown"


def test_record_click_without_origin_is_kept(db_session, member_factory):
    referrer = member_factory(name="alice")
    click = attribution_service.record_click(db_session, referrer.referral_code, "fp-1", None, now=T0)
    assert click.id is not None
    assert click.origin_hash == "unknown"


def test_record_click_unknown_code(db_session):
    with pytest.raises(NotFound):
        attribution_service.record_click(db_session, "NOBODY-ABCDEF", "fp", "203.0.113.7", now=T0)


# --- Conversion ---

def _signup(db, code, at, membership_id="mem_new", sale_amount=None):
    return conversion_service.register_signup(
        db,
        membership_id=membership_id,
        user_id=f"user_{membership_id}",
        company_id="biz_main",
        username="newbie",
        referred_by=code,
        created_at=at,
        sale_amount=sale_amount,
    )


def test_signup_just_inside_window_is_attributed(db_session, member_factory):
    referrer = member_factory(name="alice")
    click = attribution_service.record_click(db_session, referrer.referral_code, "fp", "203.0.113.7", now=T0)

    result = _signup(db_session, referrer.referral_code, T0 + WINDOW - timedelta(seconds=1), sale_amount=Decimal("49.99"))

    assert result.outcome == "processed"
    assert result.conversion.status == "matched"
    assert result.conversion.click_id == click.id
    db_session.refresh(click)
    assert click.converted is True
    assert click.conversion_value == Decimal("49.99")
    member = crud_member.get_member_by_id(db_session, result.member_id)
    assert member.attribution_click_id == click.id
    assert member.member_origin == "referred"


def test_signup_just_after_expiry_is_unmatched(db_session, member_factory):
    referrer = member_factory(name="alice")
    click = attribution_service.record_click(db_session, referrer.referral_code, "fp", "203.0.113.7", now=T0)

    result = _signup(db_session, referrer.referral_code, T0 + WINDOW + timedelta(seconds=1))

    assert result.outcome == "unmatched"
    assert result.conversion.status == "unmatched"
    member = crud_member.get_member_by_id(db_session, result.member_id)
    # Still counted as referred, just without a click
    assert member.member_origin == "referred"
    assert member.referred_by == referrer.referral_code
    assert member.attribution_click_id is None
    db_session.refresh(click)
    assert click.converted is False


def test_closest_preceding_click_wins(db_session, member_factory):
    referrer = member_factory(name="alice")
    code = referrer.referral_code
    older = attribution_service.record_click(db_session, code, "fp-a", None, now=T0)
    newer = attribution_service.record_click(db_session, code, "fp-b", None, now=T0 + timedelta(days=2))
    attribution_service.record_click(db_session, code, "fp-c", None, now=T0 + timedelta(days=5))

    result = _signup(db_session, code, T0 + timedelta(days=3))
    assert result.conversion.click_id == newer.id

    # A converted click is never reused
    second = _signup(db_session, code, T0 + timedelta(days=3), membership_id="mem_second")
    assert second.conversion.click_id == older.id

    third = _signup(db_session, code, T0 + timedelta(days=3), membership_id="mem_third")
    assert third.conversion.status == "unmatched"


def test_lost_race_moves_to_next_candidate(db_session, member_factory, mocker):
    referrer = member_factory(name="alice")
    code = referrer.referral_code
    older = attribution_service.record_click(db_session, code, "fp-a", None, now=T0)
    attribution_service.record_click(db_session, code, "fp-b", None, now=T0 + timedelta(days=1))

    real_mark = crud_attribution.mark_converted
    calls = []

    def flaky_mark(db, click_id, converted_at, conversion_value):
        calls.append(click_id)
        if len(calls) == 1:
            return False
        return real_mark(db, click_id, converted_at=converted_at, conversion_value=conversion_value)

    mocker.patch("app.services.conversion.crud_attribution.mark_converted", side_effect=flaky_mark)

    result = _signup(db_session, code, T0 + timedelta(days=2))
    assert result.conversion.click_id == older.id
    assert len(calls) == 2


def test_signup_is_idempotent(db_session, member_factory):
    referrer = member_factory(name="alice")
    first = _signup(db_session, referrer.referral_code, T0)
    again = _signup(db_session, referrer.referral_code, T0)

    assert again.outcome == "duplicate_ignored"
    assert again.member_id == first.member_id
    assert crud_member.count_referred_members(db_session, referrer.referral_code) == 1


def test_unknown_referral_code_is_treated_as_organic(db_session):
    result = _signup(db_session, "GHOST-ABCDEF", T0)
    assert result.member_origin == "organic"
    assert result.conversion.status == "organic"
    member = crud_member.get_member_by_id(db_session, result.member_id)
    assert member.referred_by is None
