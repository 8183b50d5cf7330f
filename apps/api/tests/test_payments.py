import asyncio

import pytest
from sqlalchemy import select

from config import settings
from models.payment_log import PaymentLog
from models.webhook_event import WebhookEvent
from services import ledger
from services.errors import PaymentEventFailedError
from services.payments import (
    apply_event,
    credits_for_amount,
    credits_for_refund,
    link_customer,
    list_failed_events,
)


def test_price_table_and_fallback():
    assert credits_for_amount(499) == 10
    assert credits_for_amount(999) == 25
    assert credits_for_amount(2499) == 75
    assert credits_for_amount(250) == 10
    assert credits_for_amount(500) == 25
    assert credits_for_amount(1250) == 75
    assert credits_for_amount(1000) == 20
    assert credits_for_amount(0) == 0


@pytest.mark.asyncio
async def test_purchase_event_is_applied_exactly_once(db_session, session_maker, make_user):
    user_id = await make_user("user-buyer")

    results = [
        await apply_event(db_session, "evt_1", "purchase", user_id, 999, payment_reference="pi_1")
        for _ in range(3)
    ]

    assert results[0]["applied"] is True
    assert results[0]["credits"] == 25
    assert results[0]["balance_after"] == 25
    assert [result["duplicate"] for result in results] == [False, True, True]
    assert (await ledger.get_balance(db_session, user_id))["paid_credits"] == 25

    history = await ledger.list_transactions(db_session, user_id)
    assert history["total_count"] == 1
    assert history["entries"][0]["payment_reference"] == "pi_1"

    async with session_maker() as session:
        events = (await session.execute(select(WebhookEvent))).scalars().all()
    assert len(events) == 1
    assert events[0].success is True


@pytest.mark.asyncio
async def test_refund_event_claws_back_paid_credits(db_session, make_user):
    user_id = await make_user("user-refunded")
    await apply_event(db_session, "evt_buy", "checkout.session.completed", user_id, 499)
    await ledger.credit(db_session, user_id, 4, "bonus")

    result = await apply_event(db_session, "evt_refund", "charge.refunded", user_id, 999)

    assert result["applied"] is True
    balance = await ledger.get_balance(db_session, user_id)
    assert balance["paid_credits"] == 0
    assert balance["bonus_credits"] == 4


@pytest.mark.asyncio
async def test_customer_mapping_resolves_user(db_session, make_user):
    user_id = await make_user("user-mapped")
    assert await link_customer(db_session, user_id, "cus_1") == {"user_id": user_id, "customer_id": "cus_1"}
    assert await link_customer(db_session, "nobody", "cus_2") is None

    result = await apply_event(db_session, "evt_cus", "purchase", None, 2499, customer_id="cus_1")

    assert result["event"]["user_id"] == user_id
    assert (await ledger.get_balance(db_session, user_id))["total"] == 75


@pytest.mark.asyncio
async def test_failed_event_is_recorded_and_not_retried(db_session, session_maker):
    with pytest.raises(PaymentEventFailedError):
        await apply_event(db_session, "evt_orphan", "purchase", "ghost-user", 999)

    failed = await list_failed_events(db_session)
    assert [event["external_event_id"] for event in failed] == ["evt_orphan"]
    assert failed[0]["success"] is False
    assert "ghost-user" in failed[0]["error_message"]

    replay = await apply_event(db_session, "evt_orphan", "purchase", "ghost-user", 999)
    assert replay["duplicate"] is True
    assert replay["applied"] is False


@pytest.mark.asyncio
async def test_payment_intent_events_are_logged_without_credits(db_session, session_maker, make_user):
    user_id = await make_user("user-intent")

    result = await apply_event(
        db_session,
        "evt_pi_fail",
        "payment_intent.payment_failed",
        user_id,
        999,
        payment_reference="pi_9",
        error_code="card_declined",
        error_message="Your card was declined.",
    )

    assert result["applied"] is False
    assert result["credits"] == 0
    async with session_maker() as session:
        log = (await session.execute(select(PaymentLog))).scalar_one()
    assert log.status == "failed"
    assert log.error_code == "card_declined"
    assert log.payment_reference == "pi_9"
    assert (await ledger.get_balance(db_session, user_id))["total"] == 0


@pytest.mark.asyncio
async def test_unknown_event_types_are_acknowledged(db_session):
    result = await apply_event(db_session, "evt_misc", "customer.created", None, None)
    assert result["applied"] is False
    assert result["duplicate"] is False
    assert result["event"]["success"] is True


def test_refund_credits_are_prorated_against_the_charge():
    assert credits_for_refund(500, 999) == 12
    assert credits_for_refund(999, 999) == 25
    assert credits_for_refund(2000, 999) == 25
    assert credits_for_refund(500) == 25
    assert credits_for_refund(0, 999) == 0


@pytest.mark.asyncio
async def test_partial_refund_removes_its_share_of_the_pack(db_session, make_user):
    user_id = await make_user("user-partial")
    await apply_event(db_session, "evt_pack", "purchase", user_id, 999)

    result = await apply_event(
        db_session,
        "evt_partial",
        "charge.refunded",
        user_id,
        500,
        payment_reference="ch_partial",
        charged_amount_minor=999,
    )

    assert result["credits"] == 12
    assert result["balance_after"] == 13
    assert (await ledger.get_balance(db_session, user_id))["paid_credits"] == 13


async def _deliver_concurrently(session_maker, user_id, event_id, copies):
    async def _deliver():
        async with session_maker() as session:
            return await apply_event(session, event_id, "purchase", user_id, 999)

    return await asyncio.gather(*[_deliver() for _ in range(copies)], return_exceptions=True)


@pytest.mark.asyncio
async def test_concurrent_deliveries_apply_once(session_maker, make_user, monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 50)
    monkeypatch.setattr(settings, "LEDGER_RETRY_MAX_WAIT_MS", 20)
    user_id = await make_user("user-storm")

    results = await _deliver_concurrently(session_maker, user_id, "evt_storm", 6)

    assert not [result for result in results if isinstance(result, Exception)]
    assert [result["applied"] for result in results].count(True) == 1
    assert [result["duplicate"] for result in results].count(True) == 5
    async with session_maker() as session:
        assert (await ledger.get_balance(session, user_id))["paid_credits"] == 25
        events = (await session.execute(select(WebhookEvent))).scalars().all()
    assert len(events) == 1
    assert events[0].success is True


@pytest.mark.asyncio
async def test_losing_delivery_reports_duplicate_when_retries_run_out(session_maker, make_user, monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 1)
    user_id = await make_user("user-single-try")

    results = await _deliver_concurrently(session_maker, user_id, "evt_x", 6)

    assert not [result for result in results if isinstance(result, Exception)]
    assert [result["applied"] for result in results].count(True) == 1
    assert all(result["applied"] or result["duplicate"] for result in results)
    async with session_maker() as session:
        assert (await ledger.get_balance(session, user_id))["paid_credits"] == 25
        assert await list_failed_events(session) == []
