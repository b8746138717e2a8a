"""FraudGuard: disposable e-mail and duplicate instrument vetoes."""

import pytest

from billsync_api.billing.errors import (
    DisposableEmailRejected,
    DuplicateInstrumentRejected,
    ProviderLookupFailed,
)
from billsync_api.billing.fraud_guard import FraudGuard, email_domain, is_disposable_email
from tests.billing_helpers import FakeStripeClient, subscription


@pytest.mark.parametrize(
    "email,expected",
    [
        ("someone@mailinator.com", True),
        ("someone@MAILINATOR.COM", True),
        ("someone@eu.mailinator.com", True),
        ("someone@example.com", False),
        ("someone@notmailinator.com", False),
        ("no-at-sign", False),
        (None, False),
    ],
)
def test_is_disposable_email(email, expected):
    assert is_disposable_email(email, extra_domains=set()) is expected


def test_extra_domains_extend_the_denylist():
    assert is_disposable_email("a@burner.test", extra_domains={"burner.test"}) is True
    assert is_disposable_email("a@burner.test", extra_domains=set()) is False


def test_extra_domains_from_environment(monkeypatch):
    monkeypatch.setenv("DISPOSABLE_EMAIL_DOMAINS", "burner.test, other.test")
    assert is_disposable_email("a@other.test") is True


def test_email_domain():
    assert email_domain("A@Example.COM") == "example.com"
    assert email_domain("") is None


def test_clean_account_passes(db_session, make_account):
    account = make_account()
    FraudGuard(db_session, FakeStripeClient()).evaluate(account, "fp_new")


def test_disposable_email_rejected(db_session, make_account):
    account = make_account(email="trial@mailinator.com")
    with pytest.raises(DisposableEmailRejected):
        FraudGuard(db_session, FakeStripeClient()).evaluate(account, None)


def test_fingerprint_on_other_active_account_rejected(db_session, make_account):
    make_account(payment_fingerprint="fp_shared", subscription_state="active")
    account = make_account()
    with pytest.raises(DuplicateInstrumentRejected):
        FraudGuard(db_session, FakeStripeClient()).evaluate(account, "fp_shared")


def test_fingerprint_on_inactive_account_allowed(db_session, make_account):
    make_account(payment_fingerprint="fp_shared", subscription_state="canceled")
    account = make_account()
    FraudGuard(db_session, FakeStripeClient()).evaluate(account, "fp_shared")


def test_own_fingerprint_allowed(db_session, make_account):
    account = make_account(payment_fingerprint="fp_mine", subscription_state="active")
    FraudGuard(db_session, FakeStripeClient()).evaluate(account, "fp_mine")


@pytest.mark.asyncio
async def test_compensate_cancels_subscription(db_session):
    provider = FakeStripeClient()
    await FraudGuard(db_session, provider).compensate("sub_bad", reason="DISPOSABLE_EMAIL_REJECTED")
    provider.cancel_subscription.assert_awaited_once_with("sub_bad")


@pytest.mark.asyncio
async def test_compensate_without_subscription_is_noop(db_session):
    provider = FakeStripeClient()
    await FraudGuard(db_session, provider).compensate(None, reason="x")
    provider.cancel_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_compensate_propagates_provider_failure(db_session):
    provider = FakeStripeClient()
    provider.cancel_subscription.side_effect = ProviderLookupFailed("down", operation="subscription.cancel")
    with pytest.raises(ProviderLookupFailed):
        await FraudGuard(db_session, provider).compensate("sub_bad", reason="x")


@pytest.mark.asyncio
async def test_fingerprint_for_reads_the_subscription(db_session):
    provider = FakeStripeClient()
    provider.retrieve_subscription.return_value = subscription(subscription_id="sub_9", fingerprint="fp_9")

    assert await FraudGuard(db_session, provider).fingerprint_for("sub_9") == "fp_9"
    provider.retrieve_subscription.assert_awaited_once_with("sub_9")


@pytest.mark.asyncio
async def test_fingerprint_for_is_none_when_lookup_fails(db_session):
    provider = FakeStripeClient()
    provider.retrieve_subscription.side_effect = ProviderLookupFailed("down", operation="retrieve_subscription")

    assert await FraudGuard(db_session, provider).fingerprint_for("sub_9") is None
