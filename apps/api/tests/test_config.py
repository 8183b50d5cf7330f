import pytest

from config import require_webhook_secret, settings, validate_billing_settings


def test_webhooks_disabled_needs_no_secret(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_WEBHOOKS_ENABLED", False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    validate_billing_settings()


def test_enabled_webhooks_require_signing_secret(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_WEBHOOKS_ENABLED", True)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    with pytest.raises(ValueError):
        validate_billing_settings()

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "sk_live_not_a_webhook_secret")
    with pytest.raises(ValueError):
        validate_billing_settings()

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", " whsec_ok ")
    validate_billing_settings()
    assert require_webhook_secret() == "whsec_ok"


def test_retry_budget_must_be_positive(monkeypatch):
    monkeypatch.setattr(settings, "LEDGER_MAX_RETRIES", 0)
    with pytest.raises(ValueError):
        validate_billing_settings()
