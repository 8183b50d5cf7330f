import pytest

from config import settings
from services import ledger
from services.referrals import complete_referral, create_referral, get_referral_stats


@pytest.mark.asyncio
async def test_completion_grants_both_bonuses_once(db_session, make_user):
    referrer = await make_user("user-referrer")
    referred = await make_user("user-referred")
    created = await create_referral(db_session, referrer, "Friend@Example.com")
    assert created["status"] == "pending"
    assert created["referred_email"] == "friend@example.com"

    completed = await complete_referral(db_session, referrer, referred)

    assert completed["status"] == "completed"
    assert completed["referred_user_id"] == referred
    assert completed["credits_earned"] == settings.REFERRAL_REFERRER_BONUS
    assert (await ledger.get_balance(db_session, referrer))["bonus_credits"] == 5
    assert (await ledger.get_balance(db_session, referred))["bonus_credits"] == 10

    assert await complete_referral(db_session, referrer, referred) is None
    assert (await ledger.get_balance(db_session, referrer))["bonus_credits"] == 5
    assert (await ledger.get_balance(db_session, referred))["bonus_credits"] == 10


@pytest.mark.asyncio
async def test_completion_without_pending_referral_is_a_noop(db_session, make_user):
    referrer = await make_user("user-lonely")
    referred = await make_user("user-stranger")

    assert await complete_referral(db_session, referrer, referred) is None
    assert (await ledger.get_balance(db_session, referred))["total"] == 0
    assert await complete_referral(db_session, referrer, referrer) is None


@pytest.mark.asyncio
async def test_bonus_amounts_follow_settings(db_session, make_user, monkeypatch):
    monkeypatch.setattr(settings, "REFERRAL_REFERRER_BONUS", 7)
    monkeypatch.setattr(settings, "REFERRAL_WELCOME_BONUS", 0)
    referrer = await make_user("user-ref-a")
    referred = await make_user("user-ref-b")
    await create_referral(db_session, referrer, "b@example.com")

    await complete_referral(db_session, referrer, referred)

    assert (await ledger.get_balance(db_session, referrer))["bonus_credits"] == 7
    assert (await ledger.get_balance(db_session, referred))["total"] == 0


@pytest.mark.asyncio
async def test_referral_stats(db_session, make_user):
    referrer = await make_user("user-stats")
    referred = await make_user("user-stats-friend")
    await create_referral(db_session, referrer, "one@example.com")
    await create_referral(db_session, referrer, "two@example.com")
    await complete_referral(db_session, referrer, referred)

    stats = await get_referral_stats(db_session, referrer)

    assert stats == {"user_id": referrer, "pending": 1, "completed": 1, "credits_earned": 5}


@pytest.mark.asyncio
async def test_create_referral_validates_email(db_session, make_user):
    referrer = await make_user("user-bad-email")
    with pytest.raises(ValueError):
        await create_referral(db_session, referrer, "not-an-email")
