"""GET /api/stripe/post-checkout: the synchronous write path racing the webhook."""

import time
from datetime import datetime, timezone
from unittest.mock import patch
from urllib.parse import unquote

from billsync_api.analytics.sinks import SignalKind
from billsync_api.auth.session_token import SESSION_COOKIE_NAME
from billsync_api.billing import event_ledger
from billsync_api.billing.errors import ProviderLookupFailed
from billsync_api.billing.status_mapper import SubscriptionState
from billsync_api.routers.checkout import GENERIC_REJECTION_MESSAGE, PROCESSING_PATH
from tests.billing_helpers import (
    checkout,
    reload,
    sign_in_cookie,
    signed_request,
    stripe_event,
    subscription,
    subscription_object,
)

URL = "/api/stripe/post-checkout"


def redirect_back(client, session_id="cs_test_1"):
    return client.get(URL, params={"session_id": session_id})


def deliver(client, event):
    body, headers = signed_request(event)
    return client.post("/api/webhook/stripe", content=body, headers=headers)


def test_missing_session_id_goes_to_error_page(client):
    response = client.get(URL)

    assert response.status_code == 303
    assert response.headers["location"].startswith("/error?message=")


def test_signed_out_browser_is_sent_to_sign_in(client, fake_stripe):
    response = redirect_back(client)

    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith("/login?callbackUrl=")
    assert unquote(location.split("callbackUrl=", 1)[1]) == f"{URL}?session_id=cs_test_1"
    fake_stripe.retrieve_checkout.assert_not_awaited()


def test_trialing_checkout_applies_and_rotates_cookie(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="trialing"))

    response = redirect_back(client)

    assert response.status_code == 303
    assert response.headers["location"] == PROCESSING_PATH
    assert reload(db_session, "acct_1").subscription_state == "trialing"
    assert event_ledger.has_processed(db_session, "checkout:cs_test_1")

    rotated = broker.decode(response.cookies[SESSION_COOKIE_NAME])
    assert rotated.snapshot.subscription_state == SubscriptionState.TRIALING


def test_redirect_then_webhook_converges_on_the_later_status(
    client, db_session, make_account, broker, fake_stripe, lifecycle_sink
):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="trialing"))
    redirect_back(client)

    # Emitted before the redirect's lookup: loses on provider time
    deliver(
        client,
        stripe_event(
            "evt_created",
            "customer.subscription.created",
            subscription_object(status="incomplete"),
            created=int(time.time()) - 60,
        ),
    )
    assert reload(db_session, "acct_1").subscription_state == "trialing"

    deliver(
        client,
        stripe_event(
            "evt_updated",
            "customer.subscription.updated",
            subscription_object(status="active"),
            created=int(time.time()) + 5,
        ),
    )
    assert reload(db_session, "acct_1").subscription_state == "active"
    assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]


def test_webhook_then_redirect_subscribes_once(
    client, db_session, make_account, broker, fake_stripe, lifecycle_sink
):
    account = make_account()
    sign_in_cookie(client, broker, account)
    deliver(
        client,
        stripe_event(
            "evt_updated",
            "customer.subscription.updated",
            subscription_object(status="active"),
            created=int(time.time()) - 5,
        ),
    )
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="active"))

    response = redirect_back(client)

    assert response.headers["location"] == PROCESSING_PATH
    assert reload(db_session, "acct_1").subscription_state == "active"
    assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]
    rotated = broker.decode(response.cookies[SESSION_COOKIE_NAME])
    assert rotated.snapshot.subscription_state == SubscriptionState.ACTIVE


def test_repeated_redirect_is_idempotent(client, db_session, make_account, broker, fake_stripe, lifecycle_sink):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="active"))

    first = redirect_back(client)
    second = redirect_back(client)

    assert first.headers["location"] == PROCESSING_PATH
    assert second.headers["location"] == PROCESSING_PATH
    assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]


def test_lookup_failure_goes_to_processing_page(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.side_effect = ProviderLookupFailed("timeout", operation="retrieve_checkout")

    response = redirect_back(client)

    assert response.status_code == 303
    assert response.headers["location"] == PROCESSING_PATH
    assert reload(db_session, "acct_1").subscription_state == "new"
    assert not event_ledger.has_processed(db_session, "checkout:cs_test_1")


def test_checkout_of_another_account_is_refused(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(account_id="acct_other", sub=subscription())

    response = redirect_back(client)

    assert response.status_code == 303
    assert "Session%20mismatch" in response.headers["location"]
    assert reload(db_session, "acct_1").subscription_state == "new"


def test_pending_subscription_goes_to_processing_page(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=None)

    response = redirect_back(client)

    assert response.headers["location"] == PROCESSING_PATH
    fake_stripe.find_active_subscription.assert_awaited_once_with("cus_1")
    assert reload(db_session, "acct_1").subscription_state == "new"


def test_subscription_found_by_customer_lookup(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=None)
    fake_stripe.find_active_subscription.return_value = subscription(status="active")

    redirect_back(client)

    assert reload(db_session, "acct_1").subscription_state == "active"


def test_disposable_email_is_vetoed(client, db_session, make_account, broker, fake_stripe, lifecycle_sink):
    account = make_account(email="burner@mailinator.com")
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="active"))

    response = redirect_back(client)

    assert response.status_code == 303
    assert unquote(response.headers["location"]) == f"/error?message={GENERIC_REJECTION_MESSAGE}"
    fake_stripe.cancel_subscription.assert_awaited_once_with("sub_1")
    assert reload(db_session, "acct_1").subscription_state == "new"
    assert lifecycle_sink.signals == []


def test_failed_compensation_records_nothing(client, db_session, make_account, broker, fake_stripe):
    account = make_account(email="burner@mailinator.com")
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="active"))
    fake_stripe.cancel_subscription.side_effect = ProviderLookupFailed("down", operation="cancel_subscription")

    response = redirect_back(client)

    assert response.headers["location"] == PROCESSING_PATH
    assert not event_ledger.has_processed(db_session, "checkout:cs_test_1")
    assert reload(db_session, "acct_1").subscription_state == "new"


def test_webhook_in_the_same_second_as_the_redirect_wins(
    client, db_session, make_account, broker, fake_stripe, lifecycle_sink
):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="trialing"))
    lookup_time = datetime(2026, 3, 1, 12, 0, 0, 800000, tzinfo=timezone.utc)

    with patch("billsync_api.routers.checkout.datetime") as clock:
        clock.now.return_value = lookup_time
        redirect_back(client)

    deliver(
        client,
        stripe_event(
            "evt_updated",
            "customer.subscription.updated",
            subscription_object(status="active"),
            created=int(lookup_time.timestamp()),
        ),
    )

    assert reload(db_session, "acct_1").subscription_state == "active"
    assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]


def test_webhook_just_after_the_redirect_wins(client, db_session, make_account, broker, fake_stripe):
    account = make_account()
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="trialing"))
    redirect_back(client)

    deliver(
        client,
        stripe_event(
            "evt_updated",
            "customer.subscription.updated",
            subscription_object(status="active"),
            created=int(time.time()),
        ),
    )

    assert reload(db_session, "acct_1").subscription_state == "active"


def test_vetoed_plan_switch_leaves_the_current_subscription_alone(
    client, db_session, make_account, broker, fake_stripe, lifecycle_sink
):
    account = make_account(
        subscription_state="active",
        subscription_id="sub_A",
        fraud_cleared_subscription_id="sub_A",
    )
    make_account(subscription_state="active", payment_fingerprint="fp_dup")
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(
        sub=subscription(subscription_id="sub_B", fingerprint="fp_dup")
    )

    response = redirect_back(client)

    assert unquote(response.headers["location"]) == f"/error?message={GENERIC_REJECTION_MESSAGE}"
    fake_stripe.cancel_subscription.assert_awaited_once_with("sub_B")

    # The provider confirms the compensating cancel
    deliver(
        client,
        stripe_event(
            "evt_del_b",
            "customer.subscription.deleted",
            subscription_object(subscription_id="sub_B", status="canceled"),
        ),
    )

    stored = reload(db_session, "acct_1")
    assert stored.subscription_state == "active"
    assert stored.subscription_id == "sub_A"
    assert event_ledger.has_processed(db_session, "evt_del_b")
    assert lifecycle_sink.signals == []


def test_vetoed_first_checkout_ignores_the_follow_up_deletion(
    client, db_session, make_account, broker, fake_stripe, lifecycle_sink
):
    account = make_account(email="burner@mailinator.com")
    sign_in_cookie(client, broker, account)
    fake_stripe.retrieve_checkout.return_value = checkout(sub=subscription(status="active"))
    redirect_back(client)

    deliver(
        client,
        stripe_event(
            "evt_del",
            "customer.subscription.deleted",
            subscription_object(status="canceled"),
        ),
    )

    stored = reload(db_session, "acct_1")
    assert stored.subscription_state == "new"
    assert stored.vetoed_subscription_id == "sub_1"
    fake_stripe.cancel_subscription.assert_awaited_once_with("sub_1")
    assert lifecycle_sink.signals == []
