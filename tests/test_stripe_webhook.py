"""POST /api/webhook/stripe: verification, ledger, reconciliation, error taxonomy."""

import asyncio
import json
import time

import httpx
import pytest

from billsync_api.analytics.sinks import SignalKind
from billsync_api.billing import event_ledger
from billsync_api.billing.errors import ProviderLookupFailed
from tests.billing_helpers import (
    reload,
    sign_payload,
    signed_request,
    stripe_event,
    subscription,
    subscription_object,
)

WEBHOOK_URL = "/api/webhook/stripe"


def post_event(client, event):
    body, headers = signed_request(event)
    return client.post(WEBHOOK_URL, content=body, headers=headers)


def checkout_session_object(
    session_id="cs_1", account_id="acct_1", customer_id="cus_1", subscription_id="sub_1"
):
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription",
        "client_reference_id": account_id,
        "customer": customer_id,
        "subscription": subscription_id,
        "payment_status": "paid",
    }


class TestVerification:
    def test_missing_signature_is_400(self, client):
        response = client.post(WEBHOOK_URL, content=b"{}", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("application/problem+json")
        body = response.json()
        assert body["error_code"] == "WEBHOOK_MISSING_SIGNATURE"
        assert body["instance"].startswith("urn:billsync:trace:")
        assert "Retry-After" not in response.headers

    def test_wrong_secret_is_400(self, client, db_session):
        event = stripe_event("evt_forged", "customer.subscription.updated", subscription_object())
        body = json.dumps(event).encode()
        headers = {"Stripe-Signature": sign_payload(body, secret="whsec_someone_else")}

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
        assert not event_ledger.has_processed(db_session, "evt_forged")

    def test_tampered_body_is_400(self, client):
        event = stripe_event("evt_1", "customer.subscription.updated", subscription_object())
        body, headers = signed_request(event)

        response = client.post(WEBHOOK_URL, content=body.replace(b"active", b"canceled"), headers=headers)

        assert response.status_code == 400

    def test_stale_timestamp_is_400(self, client):
        body = json.dumps(stripe_event("evt_old", "customer.created", {})).encode()
        headers = {"Stripe-Signature": sign_payload(body, timestamp=int(time.time()) - 3600)}

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400

    def test_missing_signing_secret_is_500_with_retry_after(self, client, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        body = json.dumps(stripe_event("evt_1", "customer.created", {})).encode()
        headers = {"Stripe-Signature": sign_payload(body, secret="whsec_anything")}

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["error_code"] == "WEBHOOK_PROVIDER_MISCONFIG"
        assert response.headers["Retry-After"] == "60"

    def test_event_without_id_is_400(self, client):
        event = stripe_event("evt_x", "customer.created", {})
        del event["id"]

        response = post_event(client, event)

        assert response.status_code == 400
        assert response.json()["error_code"] == "WEBHOOK_INVALID_PAYLOAD"


class TestSubscriptionEvents:
    def test_activation_updates_account_and_emits_subscribe(
        self, client, db_session, make_account, lifecycle_sink
    ):
        make_account()
        event = stripe_event("evt_1", "customer.subscription.updated", subscription_object())

        response = post_event(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "processed"}
        account = reload(db_session, "acct_1")
        assert account.subscription_state == "active"
        assert account.subscription_id == "sub_1"
        assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]
        assert lifecycle_sink.signals[0].properties["plan"] == "Basic"
        assert event_ledger.has_processed(db_session, "evt_1")

    def test_redelivery_is_acknowledged_without_reprocessing(
        self, client, db_session, make_account, lifecycle_sink
    ):
        make_account()
        event = stripe_event("evt_1", "customer.subscription.updated", subscription_object())

        post_event(client, event)
        response = post_event(client, event)

        assert response.json()["status"] == "already_processed"
        assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]

    def test_older_event_arriving_later_is_ignored(self, client, db_session, make_account):
        make_account()
        now = int(time.time())
        newer = stripe_event("evt_new", "customer.subscription.updated", subscription_object(), created=now)
        older = stripe_event(
            "evt_old",
            "customer.subscription.updated",
            subscription_object(status="past_due"),
            created=now - 120,
        )

        post_event(client, newer)
        response = post_event(client, older)

        assert response.status_code == 200
        assert reload(db_session, "acct_1").subscription_state == "active"
        assert event_ledger.has_processed(db_session, "evt_old")

    def test_deletion_cancels_and_emits_cancel(self, client, db_session, make_account, lifecycle_sink):
        make_account(subscription_state="active", subscription_id="sub_1", price_id="price_basic")
        obj = subscription_object(
            status="canceled",
            cancellation_details={"reason": "cancellation_requested", "feedback": "too_expensive"},
        )

        post_event(client, stripe_event("evt_del", "customer.subscription.deleted", obj))

        account = reload(db_session, "acct_1")
        assert account.subscription_state == "canceled"
        assert account.subscription_id is None
        assert lifecycle_sink.kinds() == [SignalKind.CANCEL]
        assert lifecycle_sink.signals[0].properties["reason"] == "too_expensive"

    def test_deleting_another_subscription_keeps_the_account_active(
        self, client, db_session, make_account, lifecycle_sink
    ):
        make_account(subscription_state="active", subscription_id="sub_A", price_id="price_basic")
        obj = subscription_object(subscription_id="sub_B", status="canceled")

        response = post_event(client, stripe_event("evt_del_b", "customer.subscription.deleted", obj))

        assert response.json()["status"] == "processed"
        account = reload(db_session, "acct_1")
        assert account.subscription_state == "active"
        assert account.subscription_id == "sub_A"
        assert account.price_id == "price_basic"
        assert event_ledger.has_processed(db_session, "evt_del_b")
        assert lifecycle_sink.signals == []

    def test_paused_subscription_is_expired(self, client, db_session, make_account):
        make_account(subscription_state="active")

        post_event(
            client,
            stripe_event("evt_p", "customer.subscription.paused", subscription_object(status="paused")),
        )

        assert reload(db_session, "acct_1").subscription_state == "expired"

    def test_event_for_deleted_account_is_recorded(self, client, db_session, lifecycle_sink):
        event = stripe_event(
            "evt_orphan",
            "customer.subscription.deleted",
            subscription_object(customer_id="cus_gone", status="canceled"),
        )

        first = post_event(client, event)
        second = post_event(client, event)

        assert first.status_code == 200
        assert first.json()["status"] == "processed"
        assert second.json()["status"] == "already_processed"
        assert event_ledger.has_processed(db_session, "evt_orphan")
        assert lifecycle_sink.signals == []


class TestInvoiceEvents:
    def test_payment_failed_uses_current_provider_status(self, client, db_session, make_account, fake_stripe):
        make_account(subscription_state="active", subscription_id="sub_1")
        fake_stripe.retrieve_subscription.return_value = subscription(status="past_due")
        invoice = {"id": "in_1", "object": "invoice", "customer": "cus_1", "subscription": "sub_1"}

        post_event(client, stripe_event("evt_inv", "invoice.payment_failed", invoice))

        assert reload(db_session, "acct_1").subscription_state == "past_due"
        fake_stripe.retrieve_subscription.assert_awaited_once_with("sub_1")

    def test_lookup_failure_falls_back_to_invoice_outcome(self, client, db_session, make_account, fake_stripe):
        make_account(subscription_state="active", subscription_id="sub_1")
        fake_stripe.retrieve_subscription.side_effect = ProviderLookupFailed(
            "timeout", operation="retrieve_subscription"
        )
        invoice = {
            "id": "in_1",
            "object": "invoice",
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
        }

        response = post_event(client, stripe_event("evt_inv", "invoice.payment_failed", invoice))

        assert response.status_code == 200
        assert reload(db_session, "acct_1").subscription_state == "past_due"

    def test_payment_succeeded_reactivates(self, client, db_session, make_account, fake_stripe):
        make_account(subscription_state="past_due", subscription_id="sub_1")
        fake_stripe.retrieve_subscription.return_value = subscription(status="active")
        invoice = {
            "id": "in_2",
            "object": "invoice",
            "customer": "cus_1",
            "subscription": "sub_1",
            "amount_paid": 1900,
            "currency": "usd",
        }

        post_event(client, stripe_event("evt_paid", "invoice.payment_succeeded", invoice))

        assert reload(db_session, "acct_1").subscription_state == "active"


class TestCheckoutCompleted:
    def test_completion_activates_the_referenced_account(
        self, client, db_session, make_account, fake_stripe, lifecycle_sink
    ):
        make_account(customer_id=None)
        fake_stripe.retrieve_subscription.return_value = subscription(fingerprint="fp_1")

        response = post_event(
            client, stripe_event("evt_cs", "checkout.session.completed", checkout_session_object())
        )

        assert response.json()["status"] == "processed"
        account = reload(db_session, "acct_1")
        assert account.subscription_state == "active"
        assert account.customer_id == "cus_1"
        assert account.payment_fingerprint == "fp_1"
        assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]

    def test_disposable_email_is_rejected_and_canceled(
        self, client, db_session, make_account, fake_stripe, lifecycle_sink
    ):
        make_account(email="burner@mailinator.com")
        fake_stripe.retrieve_subscription.return_value = subscription()

        response = post_event(
            client, stripe_event("evt_cs", "checkout.session.completed", checkout_session_object())
        )

        assert response.status_code == 200
        fake_stripe.cancel_subscription.assert_awaited_once_with("sub_1")
        assert reload(db_session, "acct_1").subscription_state == "new"
        assert event_ledger.has_processed(db_session, "evt_cs")
        assert lifecycle_sink.signals == []

    def test_subscription_created_first_still_screens_the_instrument(
        self, client, db_session, make_account, fake_stripe, lifecycle_sink
    ):
        make_account()
        make_account(subscription_state="active", payment_fingerprint="fp_dup")
        fake_stripe.retrieve_subscription.return_value = subscription(
            subscription_id="sub_new", fingerprint="fp_dup"
        )
        now = int(time.time())

        post_event(
            client,
            stripe_event(
                "evt_created",
                "customer.subscription.created",
                subscription_object(subscription_id="sub_new"),
                created=now - 1,
            ),
        )
        response = post_event(
            client,
            stripe_event(
                "evt_cs",
                "checkout.session.completed",
                checkout_session_object(subscription_id="sub_new"),
                created=now,
            ),
        )

        assert response.status_code == 200
        assert fake_stripe.cancel_subscription.await_count == 1
        fake_stripe.cancel_subscription.assert_awaited_with("sub_new")
        account = reload(db_session, "acct_1")
        assert account.subscription_state == "new"
        assert account.subscription_id is None
        assert account.vetoed_subscription_id == "sub_new"
        assert event_ledger.has_processed(db_session, "evt_created")
        assert event_ledger.has_processed(db_session, "evt_cs")
        assert lifecycle_sink.signals == []

    def test_completion_screens_a_subscription_activated_without_fingerprint(
        self, client, db_session, make_account, fake_stripe
    ):
        make_account()
        make_account(subscription_state="active", payment_fingerprint="fp_dup")
        now = int(time.time())
        post_event(
            client,
            stripe_event(
                "evt_created",
                "customer.subscription.created",
                subscription_object(subscription_id="sub_new"),
                created=now - 1,
            ),
        )
        assert reload(db_session, "acct_1").fraud_cleared_subscription_id is None

        fake_stripe.retrieve_subscription.return_value = subscription(
            subscription_id="sub_new", fingerprint="fp_dup"
        )
        post_event(
            client,
            stripe_event(
                "evt_cs",
                "checkout.session.completed",
                checkout_session_object(subscription_id="sub_new"),
                created=now,
            ),
        )

        fake_stripe.cancel_subscription.assert_awaited_once_with("sub_new")
        assert reload(db_session, "acct_1").vetoed_subscription_id == "sub_new"

    def test_cleared_subscription_is_not_screened_again(self, client, db_session, make_account, fake_stripe):
        make_account()
        fake_stripe.retrieve_subscription.return_value = subscription(fingerprint="fp_1")
        post_event(client, stripe_event("evt_cs", "checkout.session.completed", checkout_session_object()))
        assert reload(db_session, "acct_1").fraud_cleared_subscription_id == "sub_1"
        fake_stripe.retrieve_subscription.reset_mock()

        post_event(client, stripe_event("evt_upd", "customer.subscription.updated", subscription_object()))

        fake_stripe.retrieve_subscription.assert_not_awaited()
        fake_stripe.cancel_subscription.assert_not_awaited()

    def test_lookup_failure_is_retryable_and_records_nothing(
        self, client, db_session, make_account, fake_stripe
    ):
        make_account()
        fake_stripe.retrieve_subscription.side_effect = ProviderLookupFailed(
            "timeout", operation="retrieve_subscription"
        )
        event = stripe_event("evt_cs", "checkout.session.completed", checkout_session_object())

        response = post_event(client, event)

        assert response.status_code == 500
        assert response.json()["error_code"] == "WEBHOOK_INTERNAL_ERROR"
        assert response.headers["Retry-After"] == "60"
        assert not event_ledger.has_processed(db_session, "evt_cs")

        fake_stripe.retrieve_subscription.side_effect = None
        fake_stripe.retrieve_subscription.return_value = subscription()
        retry = post_event(client, event)

        assert retry.json()["status"] == "processed"
        assert reload(db_session, "acct_1").subscription_state == "active"

    def test_one_time_payment_is_recorded_only(self, client, db_session, make_account):
        make_account()
        obj = checkout_session_object()
        obj["mode"] = "payment"

        response = post_event(client, stripe_event("evt_pay", "checkout.session.completed", obj))

        assert response.json()["status"] == "processed"
        assert reload(db_session, "acct_1").subscription_state == "new"
        assert event_ledger.has_processed(db_session, "evt_pay")


def test_unhandled_event_type_is_recorded(client, db_session):
    event = stripe_event("evt_cust", "customer.created", {"id": "cus_9", "object": "customer"})

    response = post_event(client, event)

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert event_ledger.has_processed(db_session, "evt_cust")
    assert post_event(client, event).json()["status"] == "already_processed"


@pytest.mark.asyncio
async def test_concurrent_identical_deliveries_apply_once(
    session_factory, patched_providers, db_session, make_account, lifecycle_sink
):
    from billsync_api.main import create_app

    make_account()
    body, headers = signed_request(
        stripe_event("evt_burst", "customer.subscription.updated", subscription_object())
    )

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app()), base_url="http://testserver"
    ) as async_client:
        responses = await asyncio.gather(
            *(async_client.post(WEBHOOK_URL, content=body, headers=headers) for _ in range(5))
        )

    statuses = sorted(r.json()["status"] for r in responses)
    assert all(r.status_code == 200 for r in responses)
    assert statuses == ["already_processed"] * 4 + ["processed"]
    assert reload(db_session, "acct_1").subscription_state == "active"
    assert lifecycle_sink.kinds() == [SignalKind.SUBSCRIBE]
