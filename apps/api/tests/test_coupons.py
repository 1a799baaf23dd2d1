from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from config import settings
from conftest import auth_header, make_coupon
from models.coupon import Coupon
from models.coupon_usage import CouponUsage
from models.ip_blacklist import IPBlacklist
from models.security_log import SecurityLog
from services.coupons import (
    CouponRejectedError,
    apply_coupon,
    record_checkout_coupon_usage,
    validate_coupon,
)


async def _add_coupons(session_maker, *coupons):
    async with session_maker() as session:
        session.add_all(list(coupons))
        await session.commit()
        return [coupon.id for coupon in coupons]


@pytest.mark.asyncio
async def test_validate_reports_each_rejection_reason(session_maker):
    now = datetime.now(timezone.utc)
    await _add_coupons(
        session_maker,
        make_coupon("SAVE10"),
        make_coupon("OLDCODE", expires_at=now - timedelta(days=1)),
        make_coupon("SOON", valid_from=now + timedelta(days=1)),
        make_coupon("MAXED", usage_limit=1, usage_count=1),
        make_coupon("BIGONLY", minimum_amount=1000),
        make_coupon("RETIRED", is_active=False),
    )

    async with session_maker() as session:
        cases = {
            "bad code!": "invalid_format",
            "ab": "invalid_format",
            "MISSING": "not_found",
            "RETIRED": "not_found",
            "OLDCODE": "expired",
            "SOON": "not_yet_valid",
            "MAXED": "usage_limit_reached",
            "BIGONLY": "below_minimum_amount",
        }
        for code, reason in cases.items():
            validation = await validate_coupon(code, session, user_id="shopper", amount=499)
            assert not validation.valid, code
            assert validation.reason == reason, code
            assert validation.message

        ok = await validate_coupon(" save10 ", session, user_id="shopper", amount=499)
        assert ok.valid
        assert ok.discount.discount_amount == 50
        assert ok.discount.final_amount == 449


@pytest.mark.asyncio
async def test_apply_twice_by_same_user_is_rejected(session_maker):
    await _add_coupons(session_maker, make_coupon("SAVE10"))

    async with session_maker() as session:
        applied = await apply_coupon("SAVE10", session, user_id="shopper", amount=499)
        assert applied["discount_amount"] == 50
        assert applied["final_amount"] == 449

        with pytest.raises(CouponRejectedError) as exc_info:
            await apply_coupon("SAVE10", session, user_id="shopper", amount=499)
        assert exc_info.value.reason == "already_used_by_user"

    async with session_maker() as session:
        usage_count = (await session.execute(select(func.count(CouponUsage.id)))).scalar()
        coupon = (await session.execute(select(Coupon).where(Coupon.code == "SAVE10"))).scalar_one()
        assert usage_count == 1
        assert coupon.usage_count == 1


@pytest.mark.asyncio
async def test_racing_redemption_is_stopped_by_unique_key(session_maker, monkeypatch):
    await _add_coupons(session_maker, make_coupon("SAVE10"))

    async with session_maker() as session:
        await apply_coupon("SAVE10", session, user_id="shopper", amount=499)

    async def pre_check_passes(*_args, **_kwargs):
        return False

    # Simulate a concurrent request whose read-time check ran before the first commit.
    monkeypatch.setattr("services.coupons._user_has_used_coupon", pre_check_passes)
    async with session_maker() as session:
        with pytest.raises(CouponRejectedError) as exc_info:
            await apply_coupon("SAVE10", session, user_id="shopper", amount=499)
        assert exc_info.value.status_code == 409
        assert exc_info.value.reason == "already_used_by_user"

    async with session_maker() as session:
        usage_count = (await session.execute(select(func.count(CouponUsage.id)))).scalar()
        coupon = (await session.execute(select(Coupon).where(Coupon.code == "SAVE10"))).scalar_one()
        assert usage_count == 1
        assert coupon.usage_count == 1


@pytest.mark.asyncio
async def test_usage_limit_is_enforced_at_redemption(session_maker):
    await _add_coupons(session_maker, make_coupon("ONCE", usage_limit=1, single_use_per_user=False))

    async with session_maker() as session:
        await apply_coupon("ONCE", session, user_id="first", amount=999)
        with pytest.raises(CouponRejectedError) as exc_info:
            await apply_coupon("ONCE", session, user_id="second", amount=999)
        assert exc_info.value.reason == "usage_limit_reached"


@pytest.mark.asyncio
async def test_single_use_constraint_holds_at_storage_level(session_maker):
    (coupon_id,) = await _add_coupons(session_maker, make_coupon("SAVE10"))

    async with session_maker() as session:
        first = await record_checkout_coupon_usage(
            session,
            user_id="shopper",
            payment_id="pay-1",
            original_amount=499,
            discount_amount=50,
            final_amount=449,
            currency="eur",
            coupon_id=coupon_id,
        )
        assert first is not None
        # A second paid checkout by the same user must not create another single-use row.
        second = await record_checkout_coupon_usage(
            session,
            user_id="shopper",
            payment_id="pay-2",
            original_amount=499,
            discount_amount=50,
            final_amount=449,
            currency="eur",
            coupon_id=coupon_id,
        )
        assert second is None

    async with session_maker() as session:
        rows = (await session.execute(select(CouponUsage))).scalars().all()
        assert [row.payment_id for row in rows] == ["pay-1"]


@pytest.mark.asyncio
async def test_checkout_usage_links_pending_redemption(session_maker):
    (coupon_id,) = await _add_coupons(session_maker, make_coupon("SAVE10"))

    async with session_maker() as session:
        await apply_coupon("SAVE10", session, user_id="shopper", amount=499)
        linked = await record_checkout_coupon_usage(
            session,
            user_id="shopper",
            payment_id="pay-9",
            original_amount=499,
            discount_amount=50,
            final_amount=449,
            currency="eur",
            coupon_code="SAVE10",
        )
        assert linked is not None
        assert linked.payment_id == "pay-9"

    async with session_maker() as session:
        rows = (await session.execute(select(CouponUsage))).scalars().all()
        coupon = (await session.execute(select(Coupon).where(Coupon.id == coupon_id))).scalar_one()
        assert len(rows) == 1
        assert coupon.usage_count == 1


@pytest.mark.asyncio
async def test_pending_redemption_is_claimable_only_by_its_owner(session_maker):
    await _add_coupons(session_maker, make_coupon("SAVE10", usage_limit=1))

    async with session_maker() as session:
        await apply_coupon("SAVE10", session, user_id="shopper", amount=499)

        claimed = await validate_coupon("SAVE10", session, user_id="shopper", amount=499, claim_pending=True)
        assert claimed.valid
        assert claimed.discount.final_amount == 449

        second_redemption = await validate_coupon("SAVE10", session, user_id="shopper", amount=499)
        assert second_redemption.reason == "usage_limit_reached"

        stranger = await validate_coupon("SAVE10", session, user_id="stranger", amount=499, claim_pending=True)
        assert stranger.reason == "usage_limit_reached"


@pytest.mark.asyncio
async def test_validate_endpoint_returns_discount(billing_client):
    client, session_maker, _ = billing_client
    await _add_coupons(session_maker, make_coupon("SAVE10"))

    response = await client.get("/api/coupons/validate/save10", params={"bundle": "starter"}, headers=auth_header("shopper"))
    assert response.status_code == 200
    payload = response.json()
    assert payload["valid"] is True
    assert payload["coupon"]["code"] == "SAVE10"
    assert payload["original_amount"] == 499
    assert payload["discount_amount"] == 50
    assert payload["final_amount"] == 449


@pytest.mark.asyncio
async def test_validate_endpoint_rejections_are_logged(billing_client):
    client, session_maker, _ = billing_client

    missing = await client.get("/api/coupons/validate/NOPE123", headers=auth_header("shopper"))
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason"] == "not_found"

    malformed = await client.get("/api/coupons/validate/x", headers=auth_header("shopper"))
    assert malformed.status_code == 400
    assert malformed.json()["detail"]["reason"] == "invalid_format"

    async with session_maker() as session:
        actions = (await session.execute(select(SecurityLog.action_type))).scalars().all()
    assert sorted(actions) == ["invalid_format", "validation_failed"]


@pytest.mark.asyncio
async def test_apply_endpoint_rejects_second_use(billing_client):
    client, session_maker, _ = billing_client
    headers = auth_header("shopper")
    await _add_coupons(session_maker, make_coupon("WELCOME10"))

    first = await client.post("/api/coupons/apply", json={"code": "WELCOME10", "bundle": "value"}, headers=headers)
    assert first.status_code == 200
    assert first.json()["discount_amount"] == 100
    assert first.json()["final_amount"] == 899

    second = await client.post("/api/coupons/apply", json={"code": "WELCOME10", "bundle": "value"}, headers=headers)
    assert second.status_code == 400
    assert second.json()["detail"]["reason"] == "already_used_by_user"

    missing_amount = await client.post("/api/coupons/apply", json={"code": "WELCOME10"}, headers=headers)
    assert missing_amount.status_code == 422

    usage = await client.get("/api/coupons/usage", headers=headers)
    assert [row["coupon_code"] for row in usage.json()["usage"]] == ["WELCOME10"]


@pytest.mark.asyncio
async def test_active_coupons_lists_only_public_usable_codes(billing_client):
    client, session_maker, _ = billing_client
    now = datetime.now(timezone.utc)
    await _add_coupons(
        session_maker,
        make_coupon("PUBLIC1"),
        make_coupon("HIDDEN1", is_public=False),
        make_coupon("EXPIRED1", expires_at=now - timedelta(hours=1)),
        make_coupon("FIXED5", discount_type="fixed_amount", discount_value=Decimal("5.00")),
    )

    response = await client.get("/api/coupons/active")
    assert response.status_code == 200
    codes = sorted(coupon["code"] for coupon in response.json()["coupons"])
    assert codes == ["FIXED5", "PUBLIC1"]


@pytest.mark.asyncio
async def test_repeated_failures_trigger_brute_force_block(billing_client, monkeypatch):
    client, session_maker, _ = billing_client
    monkeypatch.setattr(settings, "COUPON_BRUTE_FORCE_THRESHOLD", 3)
    headers = auth_header("guesser")

    for attempt in range(3):
        response = await client.get(f"/api/coupons/validate/GUESS{attempt}00", headers=headers)
        assert response.status_code == 404

    throttled = await client.get("/api/coupons/validate/GUESS900", headers=headers)
    assert throttled.status_code == 429
    assert throttled.json()["detail"]["reason"] == "too_many_attempts"

    blocked = await client.get("/api/coupons/validate/GUESS901", headers=headers)
    assert blocked.status_code == 403
    assert blocked.json()["detail"]["reason"] == "ip_blocked"

    async with session_maker() as session:
        entry = (await session.execute(select(IPBlacklist))).scalar_one()
        actions = (await session.execute(select(SecurityLog.action_type))).scalars().all()
    assert entry.ip_address == "127.0.0.1"
    assert entry.is_permanent is False
    assert actions.count("blocked_brute_force") == 1
    assert actions.count("blocked_request") == 1
