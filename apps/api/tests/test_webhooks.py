import json

import pytest
from rq import Queue
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from config import settings
from conftest import auth_header, checkout_completed_event, make_coupon, post_webhook, sign_payload
from models.coupon import Coupon
from models.coupon_usage import CouponUsage
from models.credit_transaction import CreditTransaction
from models.failed_credit_grant import FailedCreditGrant
from models.payment import Payment
from models.security_log import SecurityLog
from models.stripe_webhook_event import StripeWebhookEvent
from services.bundles import build_bundle_catalog
from services.credit_grant_queue import enqueue_credit_grant_retry
from services.credits import get_credit_balance, ledger_sum
from services.webhook_events import CheckoutCompleted, UnknownEvent, decode_event
from services.webhooks import retry_failed_credit_grant


async def _count(session_maker, column):
    async with session_maker() as session:
        return (await session.execute(select(func.count(column)))).scalar()


async def _balance(session_maker, user_id):
    async with session_maker() as session:
        return await get_credit_balance(user_id, session)


def test_decode_event_reads_discount_and_metadata():
    raw = checkout_completed_event("evt_decode", discount_amount=50, coupon_code="SAVE10", credit_count=2)
    event = decode_event(raw)
    assert isinstance(event, CheckoutCompleted)
    assert event.is_paid
    assert event.has_coupon
    assert event.discount_amount == 50
    assert event.amount_total == 449
    assert event.metadata_credit_count == 2
    assert event.customer_email == "buyer@example.com"

    unknown = decode_event({"id": "evt_other", "type": "customer.created", "data": {"object": {}}})
    assert isinstance(unknown, UnknownEvent)


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(billing_client):
    client, session_maker, _ = billing_client
    event = checkout_completed_event("evt_forged")
    payload = json.dumps(event)

    forged = await post_webhook(client, event, signature=sign_payload(payload, secret="whsec_attacker"))
    assert forged.status_code == 400
    assert forged.json()["detail"] == "Invalid webhook signature"

    unsigned = await post_webhook(client, event, signature="")
    assert unsigned.status_code == 400

    assert await _count(session_maker, Payment.id) == 0
    assert await _count(session_maker, StripeWebhookEvent.id) == 0
    assert await _count(session_maker, CreditTransaction.id) == 0
    async with session_maker() as session:
        actions = (await session.execute(select(SecurityLog.action_type))).scalars().all()
    assert actions == ["webhook_signature_invalid", "webhook_signature_invalid"]


@pytest.mark.asyncio
async def test_stale_signature_timestamp_is_rejected(billing_client):
    client, session_maker, _ = billing_client
    event = checkout_completed_event("evt_stale")
    payload = json.dumps(event)

    response = await post_webhook(client, event, signature=sign_payload(payload, timestamp=1_000_000))
    assert response.status_code == 400
    assert await _count(session_maker, Payment.id) == 0


@pytest.mark.asyncio
async def test_paid_checkout_grants_bundle_credits_once(billing_client):
    client, session_maker, _ = billing_client
    event = checkout_completed_event("evt_paid_1", credit_count=2)

    first = await post_webhook(client, event)
    assert first.status_code == 200
    assert first.json()["status"] == "applied"
    assert first.json()["credits_added"] == 2

    redelivered = await post_webhook(client, event)
    assert redelivered.status_code == 200
    assert redelivered.json()["status"] == "duplicate"

    assert await _balance(session_maker, "buyer-1") == 2
    assert await _count(session_maker, CreditTransaction.id) == 1
    async with session_maker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
        record = (await session.execute(select(StripeWebhookEvent))).scalar_one()
        assert await ledger_sum("buyer-1", session) == 2
    assert payment.status == "succeeded"
    assert payment.credits_purchased == 2
    assert payment.customer_email == "buyer@example.com"
    assert record.processed is True
    assert record.status == "applied"


@pytest.mark.asyncio
async def test_second_event_for_same_session_does_not_credit_again(billing_client):
    client, session_maker, _ = billing_client

    await post_webhook(client, checkout_completed_event("evt_completed", session_id="cs_async"))
    follow_up = await post_webhook(
        client,
        checkout_completed_event(
            "evt_async_succeeded",
            session_id="cs_async",
            event_type="checkout.session.async_payment_succeeded",
        ),
    )
    assert follow_up.status_code == 200
    assert follow_up.json()["credits_added"] == 0
    assert await _balance(session_maker, "buyer-1") == 2
    assert await _count(session_maker, CreditTransaction.id) == 1


@pytest.mark.asyncio
async def test_catalog_credit_count_wins_over_metadata(billing_client):
    client, session_maker, _ = billing_client

    response = await post_webhook(client, checkout_completed_event("evt_tampered", bundle_id="value", credit_count=99))
    assert response.status_code == 200
    assert response.json()["credits_added"] == 5
    assert await _balance(session_maker, "buyer-1") == 5


@pytest.mark.asyncio
async def test_discounted_purchase_records_coupon_usage(billing_client):
    client, session_maker, _ = billing_client
    async with session_maker() as session:
        coupon = make_coupon("SAVE10")
        session.add(coupon)
        await session.commit()
        coupon_id = coupon.id

    checkout = await client.post(
        "/api/stripe/create-checkout-session",
        json={"bundle": "starter", "coupon_code": "SAVE10"},
        headers=auth_header("user-42"),
    )
    assert checkout.status_code == 200
    assert checkout.json()["final_amount"] == 449

    event = checkout_completed_event(
        "evt_discounted",
        session_id=checkout.json()["session_id"],
        user_id="user-42",
        credit_count=2,
        discount_amount=50,
        coupon_id=coupon_id,
        coupon_code="SAVE10",
    )
    response = await post_webhook(client, event)
    assert response.status_code == 200
    assert response.json()["credits_added"] == 2

    assert await _balance(session_maker, "user-42") == 2
    async with session_maker() as session:
        usage = (await session.execute(select(CouponUsage))).scalar_one()
        stored_coupon = (await session.execute(select(Coupon).where(Coupon.id == coupon_id))).scalar_one()
        payment = (await session.execute(select(Payment))).scalar_one()
    assert usage.user_id == "user-42"
    assert usage.discount_amount == 50
    assert usage.original_amount == 499
    assert usage.final_amount == 449
    assert usage.payment_id == payment.id
    assert stored_coupon.usage_count == 1
    assert payment.discount_amount == 50
    assert payment.coupon_id == coupon_id

    # Redelivery neither credits again nor records a second usage.
    await post_webhook(client, event)
    assert await _count(session_maker, CouponUsage.id) == 1
    assert await _balance(session_maker, "user-42") == 2


@pytest.mark.asyncio
async def test_coupon_bookkeeping_failure_keeps_credits(billing_client, monkeypatch):
    client, session_maker, _ = billing_client

    async def broken_usage(*_args, **_kwargs):
        raise RuntimeError("coupon table unavailable")

    monkeypatch.setattr("services.webhooks.record_checkout_coupon_usage", broken_usage)
    response = await post_webhook(
        client,
        checkout_completed_event("evt_coupon_broken", discount_amount=50, coupon_code="SAVE10"),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "applied"
    assert await _balance(session_maker, "buyer-1") == 2


@pytest.mark.asyncio
async def test_unknown_event_type_is_acknowledged_and_ignored(billing_client):
    client, session_maker, _ = billing_client

    response = await post_webhook(client, {"id": "evt_customer", "type": "customer.created", "data": {"object": {}}})
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"

    async with session_maker() as session:
        record = (await session.execute(select(StripeWebhookEvent))).scalar_one()
    assert record.status == "ignored"
    assert record.processed is True
    assert await _count(session_maker, Payment.id) == 0


@pytest.mark.asyncio
async def test_malformed_event_is_rejected(billing_client):
    client, _, _ = billing_client
    response = await post_webhook(client, {"type": "checkout.session.completed", "data": {"object": {}}})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unpaid_then_expired_checkout_never_credits(billing_client):
    client, session_maker, _ = billing_client

    pending = await post_webhook(
        client, checkout_completed_event("evt_unpaid", session_id="cs_slow", payment_status="unpaid")
    )
    assert pending.json()["credits_added"] == 0

    expired = await post_webhook(
        client,
        {"id": "evt_expired", "type": "checkout.session.expired", "data": {"object": {"id": "cs_slow"}}},
    )
    assert expired.json()["status"] == "applied"

    async with session_maker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
    assert payment.status == "expired"
    assert await _count(session_maker, CreditTransaction.id) == 0


@pytest.mark.asyncio
async def test_payment_intent_failure_marks_payment(billing_client):
    client, session_maker, _ = billing_client
    await post_webhook(client, checkout_completed_event("evt_wait", session_id="cs_card", payment_status="unpaid"))

    response = await post_webhook(
        client,
        {
            "id": "evt_pi_failed",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_cs_card",
                    "amount": 499,
                    "currency": "eur",
                    "last_payment_error": {"message": "Your card was declined."},
                }
            },
        },
    )
    assert response.status_code == 200
    async with session_maker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
    assert payment.status == "failed"


@pytest.mark.asyncio
async def test_anonymous_paid_checkout_records_payment_without_credits(billing_client):
    client, session_maker, _ = billing_client

    response = await post_webhook(client, checkout_completed_event("evt_anon", user_id="anonymous"))
    assert response.status_code == 200
    assert response.json()["credits_added"] == 0

    async with session_maker() as session:
        payment = (await session.execute(select(Payment))).scalar_one()
    assert payment.user_id is None
    assert payment.status == "succeeded"
    assert await _count(session_maker, CreditTransaction.id) == 0


@pytest.mark.asyncio
async def test_failed_grant_is_dead_lettered_and_retried(billing_client, monkeypatch):
    client, session_maker, _ = billing_client
    enqueued = []

    async def failing_delta(*_args, **_kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(settings, "CREDIT_GRANT_RETRY_ENABLED", True)
    monkeypatch.setattr("services.webhooks.enqueue_credit_grant_retry", enqueued.append)
    monkeypatch.setattr("services.webhooks.apply_credit_delta", failing_delta)

    response = await post_webhook(client, checkout_completed_event("evt_grant_fail", session_id="cs_fail"))
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "failed"
    grant_id = payload["failed_credit_grant_id"]
    assert enqueued == [grant_id]
    assert await _balance(session_maker, "buyer-1") == 0

    async with session_maker() as session:
        grant = (await session.execute(select(FailedCreditGrant))).scalar_one()
        record = (await session.execute(select(StripeWebhookEvent))).scalar_one()
    assert grant.resolved is False
    assert grant.checkout_session_id == "cs_fail"
    assert "ledger offline" in grant.error
    assert record.status == "failed"
    assert record.processed is False

    listed = await client.get("/api/stripe/admin/failed-credit-grants", headers=auth_header("ops", role="admin"))
    assert [item["id"] for item in listed.json()["items"]] == [grant_id]

    monkeypatch.undo()
    async with session_maker() as session:
        outcome = await retry_failed_credit_grant(grant_id, session, build_bundle_catalog(settings))
    assert outcome["resolved"] is True
    assert outcome["status"] == "applied"
    assert await _balance(session_maker, "buyer-1") == 2

    async with session_maker() as session:
        grant = (await session.execute(select(FailedCreditGrant))).scalar_one()
    assert grant.resolved is True
    assert grant.retry_count == 1


@pytest.mark.asyncio
async def test_admin_retry_endpoint_resolves_grant(billing_client, monkeypatch):
    client, session_maker, _ = billing_client

    async def failing_delta(*_args, **_kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr("services.webhooks.enqueue_credit_grant_retry", lambda grant_id: None)
    monkeypatch.setattr("services.webhooks.apply_credit_delta", failing_delta)
    response = await post_webhook(client, checkout_completed_event("evt_admin_retry", session_id="cs_admin"))
    grant_id = response.json()["failed_credit_grant_id"]
    monkeypatch.undo()

    forbidden = await client.post(
        f"/api/stripe/admin/failed-credit-grants/{grant_id}/retry", headers=auth_header("buyer-1")
    )
    assert forbidden.status_code == 403

    retried = await client.post(
        f"/api/stripe/admin/failed-credit-grants/{grant_id}/retry", headers=auth_header("ops", role="admin")
    )
    assert retried.status_code == 200
    assert retried.json()["resolved"] is True
    assert await _balance(session_maker, "buyer-1") == 2

    again = await client.post(
        f"/api/stripe/admin/failed-credit-grants/{grant_id}/retry", headers=auth_header("ops", role="admin")
    )
    assert again.json()["status"] == "already_resolved"
    assert await _balance(session_maker, "buyer-1") == 2


def test_credit_grant_retry_job_is_accepted_by_rq(monkeypatch):
    queued = []

    def capture(self, job, *args, **kwargs):
        queued.append(job)
        return job

    monkeypatch.setattr(Queue, "enqueue_job", capture)
    job = enqueue_credit_grant_retry("3f2b1c9e-0d4a-4e21-9a57-abc123")

    assert job.id == "credit-grant-3f2b1c9e-0d4a-4e21-9a57-abc123"
    assert job.func_name == "services.webhooks.process_failed_credit_grant_job"
    assert list(job.args) == ["3f2b1c9e-0d4a-4e21-9a57-abc123"]
    assert job.retries_left == 5
    assert queued == [job]


@pytest.mark.asyncio
async def test_dead_letter_enqueues_real_retry_job(billing_client, monkeypatch):
    client, _, _ = billing_client
    queued = []

    async def failing_delta(*_args, **_kwargs):
        raise RuntimeError("ledger offline")

    def capture(self, job, *args, **kwargs):
        queued.append(job)
        return job

    monkeypatch.setattr(settings, "CREDIT_GRANT_RETRY_ENABLED", True)
    monkeypatch.setattr(Queue, "enqueue_job", capture)
    monkeypatch.setattr("services.webhooks.apply_credit_delta", failing_delta)

    response = await post_webhook(client, checkout_completed_event("evt_rq_job", session_id="cs_rq"))
    assert response.status_code == 200
    grant_id = response.json()["failed_credit_grant_id"]
    assert [job.id for job in queued] == [f"credit-grant-{grant_id}"]


@pytest.mark.asyncio
async def test_queue_outage_keeps_dead_letter_and_acknowledges(billing_client, monkeypatch):
    client, session_maker, _ = billing_client

    async def failing_delta(*_args, **_kwargs):
        raise RuntimeError("ledger offline")

    def queue_offline(_grant_id):
        raise RuntimeError("redis offline")

    monkeypatch.setattr(settings, "CREDIT_GRANT_RETRY_ENABLED", True)
    monkeypatch.setattr("services.webhooks.enqueue_credit_grant_retry", queue_offline)
    monkeypatch.setattr("services.webhooks.apply_credit_delta", failing_delta)

    response = await post_webhook(client, checkout_completed_event("evt_no_queue", session_id="cs_no_queue"))
    assert response.status_code == 200
    assert response.json()["status"] == "failed"

    async with session_maker() as session:
        grant = (await session.execute(select(FailedCreditGrant))).scalar_one()
    assert grant.id == response.json()["failed_credit_grant_id"]
    assert grant.resolved is False


@pytest.mark.asyncio
async def test_unrelated_integrity_error_is_dead_lettered_not_duplicate(billing_client, monkeypatch):
    client, session_maker, _ = billing_client
    enqueued = []

    async def racing_profile_insert(*_args, **_kwargs):
        raise IntegrityError(
            "INSERT INTO user_profiles", {}, Exception("UNIQUE constraint failed: user_profiles.id")
        )

    monkeypatch.setattr(settings, "CREDIT_GRANT_RETRY_ENABLED", True)
    monkeypatch.setattr("services.webhooks.enqueue_credit_grant_retry", enqueued.append)
    monkeypatch.setattr("services.webhooks.ensure_user_profile", racing_profile_insert)

    response = await post_webhook(client, checkout_completed_event("evt_profile_race", session_id="cs_race"))
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "failed"
    assert enqueued == [payload["failed_credit_grant_id"]]

    async with session_maker() as session:
        record = (await session.execute(select(StripeWebhookEvent))).scalar_one()
        grant = (await session.execute(select(FailedCreditGrant))).scalar_one()
    assert record.processed is False
    assert grant.checkout_session_id == "cs_race"
    assert "user_profiles" in grant.error

    monkeypatch.undo()
    async with session_maker() as session:
        outcome = await retry_failed_credit_grant(grant.id, session, build_bundle_catalog(settings))
    assert outcome["status"] == "applied"
    assert await _balance(session_maker, "buyer-1") == 2


@pytest.mark.asyncio
async def test_baked_in_discount_records_consistent_amounts(billing_client):
    client, session_maker, stripe_fake = billing_client
    async with session_maker() as session:
        session.add(make_coupon("SAVE10"))
        await session.commit()

    checkout = await client.post(
        "/api/stripe/create-checkout-session",
        json={"bundle": "starter", "coupon_code": "SAVE10"},
        headers=auth_header("user-7"),
    )
    params = stripe_fake.created_sessions[0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 449

    # Stripe only saw the reduced price, so it reports no discount of its own.
    event = checkout_completed_event("evt_baked", session_id=checkout.json()["session_id"], amount_subtotal=449)
    event["data"]["object"]["metadata"] = dict(params["metadata"])
    response = await post_webhook(client, event)
    assert response.json()["status"] == "applied"

    async with session_maker() as session:
        usage = (await session.execute(select(CouponUsage))).scalar_one()
        payment = (await session.execute(select(Payment))).scalar_one()
    assert (usage.original_amount, usage.discount_amount, usage.final_amount) == (499, 50, 449)
    assert (payment.amount_subtotal, payment.discount_amount, payment.amount_total) == (499, 50, 449)
    assert usage.user_id == "user-7"


@pytest.mark.asyncio
async def test_paid_checkout_for_retired_bundle_is_dead_lettered(billing_client, monkeypatch):
    client, session_maker, _ = billing_client
    enqueued = []
    monkeypatch.setattr(settings, "CREDIT_GRANT_RETRY_ENABLED", True)
    monkeypatch.setattr("services.webhooks.enqueue_credit_grant_retry", enqueued.append)

    response = await post_webhook(
        client,
        checkout_completed_event("evt_retired", session_id="cs_retired", bundle_id="retired-pack", credit_count=7),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    assert enqueued == [response.json()["failed_credit_grant_id"]]
    assert await _balance(session_maker, "buyer-1") == 0

    async with session_maker() as session:
        grant = (await session.execute(select(FailedCreditGrant))).scalar_one()
    assert grant.credits == 7
    assert "retired-pack" in grant.error
