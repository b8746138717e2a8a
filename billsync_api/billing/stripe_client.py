"""Stripe API client.

Stripe API Reference:
- Checkout Sessions: https://docs.stripe.com/api/checkout/sessions
- Subscriptions: https://docs.stripe.com/api/subscriptions
- Webhook signatures: https://docs.stripe.com/webhooks#verify-events

The stripe SDK is synchronous; every call runs in a worker thread so request
handlers never block the event loop. SDK objects are flattened into small
frozen snapshots at this boundary, nothing downstream touches StripeObject.
"""

import asyncio
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional

import stripe

from billsync_api.billing.errors import (
    ProviderLookupFailed,
    SignatureVerificationFailed,
    WebhookMisconfigured,
)
from billsync_api.config.env import get_stripe_secret_key, get_stripe_webhook_secret

logger = logging.getLogger(__name__)

# Seconds a signed webhook timestamp may lag our clock
WEBHOOK_TOLERANCE_SECONDS = 300


def _field(obj: Any, key: str) -> Any:
    """Read a field from a dict payload or a StripeObject."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _ref_id(obj: Any) -> Optional[str]:
    """An expandable field is either an id string or an expanded object."""
    if obj is None or isinstance(obj, str):
        return obj
    return _field(obj, "id")


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side subscription as seen at lookup time."""

    subscription_id: str
    status: str
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    payment_fingerprint: Optional[str] = None
    plan: Optional[str] = None
    interval: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSnapshot:
    """Completed checkout session with the identifiers reconciliation needs."""

    session_id: str
    client_reference_id: Optional[str]
    customer_id: Optional[str]
    customer_email: Optional[str]
    subscription: Optional[SubscriptionSnapshot]
    price_id: Optional[str]
    payment_status: Optional[str] = None


def extract_price(subscription: Any) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return (price_id, plan, interval) of the first subscription item."""
    items = _field(_field(subscription, "items"), "data") or []
    if not items:
        return None, None, None
    price = _field(items[0], "price")
    price_id = _field(price, "id")
    plan = _field(price, "nickname") or price_id or "unknown"
    interval = _field(_field(price, "recurring"), "interval")
    return price_id, plan, interval


def _card_fingerprint(payment_method: Any) -> Optional[str]:
    return _field(_field(payment_method, "card"), "fingerprint")


def subscription_snapshot(subscription: Any, fingerprint: Optional[str] = None) -> SubscriptionSnapshot:
    """Flatten a subscription object (webhook dict or SDK object)."""
    price_id, plan, interval = extract_price(subscription)
    default_pm = _field(subscription, "default_payment_method")
    if fingerprint is None and default_pm is not None and not isinstance(default_pm, str):
        fingerprint = _card_fingerprint(default_pm)
    return SubscriptionSnapshot(
        subscription_id=_field(subscription, "id"),
        status=_field(subscription, "status"),
        customer_id=_ref_id(_field(subscription, "customer")),
        price_id=price_id,
        payment_fingerprint=fingerprint,
        plan=plan,
        interval=interval,
    )


class StripeClient:
    """Thin async facade over the stripe SDK.

    Environment Variables:
    - STRIPE_SECRET_KEY: API key (sk_live_... / sk_test_...)
    - STRIPE_WEBHOOK_SECRET: endpoint signing secret (whsec_...), read lazily
      so a misconfigured secret surfaces as WebhookMisconfigured per request
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or get_stripe_secret_key()

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as e:
            logger.warning(
                "STRIPE_CALL_FAILED",
                extra={
                    "event": "stripe.call_failed",
                    "operation": operation,
                    "error_type": type(e).__name__,
                    "http_status": getattr(e, "http_status", None),
                },
            )
            raise ProviderLookupFailed(str(e), operation=operation) from e

    # ── Webhooks ────────────────────────────────────────────────────────────

    def verify_webhook(self, payload: bytes, signature_header: str) -> dict:
        """Verify a Stripe-Signature header and return the parsed event.

        Args:
            payload: Raw request body (exact bytes, before any JSON parsing)
            signature_header: Value of the Stripe-Signature header

        Returns:
            Event as a plain dict

        Raises:
            WebhookMisconfigured: STRIPE_WEBHOOK_SECRET is not set
            SignatureVerificationFailed: Signature, timestamp or body invalid
        """
        try:
            secret = get_stripe_webhook_secret()
        except ValueError as e:
            raise WebhookMisconfigured(str(e)) from e

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature_header, secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureVerificationFailed("webhook signature verification failed") from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise SignatureVerificationFailed("signed payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise SignatureVerificationFailed("signed payload is not an event object")
        return event

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def retrieve_checkout(self, session_id: str) -> CheckoutSnapshot:
        """Look up a checkout session with its subscription and payment method.

        Raises:
            ProviderLookupFailed: Network or API error
        """
        session = await self._call(
            "checkout.retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=[
                "line_items.data.price",
                "subscription",
                "subscription.default_payment_method",
                "customer",
            ],
        )

        subscription = _field(session, "subscription")
        sub_snapshot: Optional[SubscriptionSnapshot] = None
        if subscription is not None and not isinstance(subscription, str):
            fingerprint = None
            if _field(subscription, "default_payment_method") is None:
                pm_id = _ref_id(_field(session, "payment_method"))
                if pm_id:
                    fingerprint = await self.retrieve_payment_fingerprint(pm_id)
            sub_snapshot = subscription_snapshot(subscription, fingerprint)
        elif isinstance(subscription, str):
            sub_snapshot = await self.retrieve_subscription(subscription)

        line_items = _field(_field(session, "line_items"), "data") or []
        price_id = _field(_field(line_items[0], "price"), "id") if line_items else None
        if price_id is None and sub_snapshot is not None:
            price_id = sub_snapshot.price_id

        customer_details = _field(session, "customer_details")
        return CheckoutSnapshot(
            session_id=_field(session, "id"),
            client_reference_id=_field(session, "client_reference_id"),
            customer_id=_ref_id(_field(session, "customer")),
            customer_email=_field(customer_details, "email") or _field(session, "customer_email"),
            subscription=sub_snapshot,
            price_id=price_id,
            payment_status=_field(session, "payment_status"),
        )

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Current provider view of a subscription, including card fingerprint."""
        subscription = await self._call(
            "subscription.retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["default_payment_method"],
        )
        return subscription_snapshot(subscription)

    async def find_active_subscription(self, customer_id: str) -> Optional[SubscriptionSnapshot]:
        """Most recent active subscription of a customer, if any."""
        result = await self._call(
            "subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="active",
            limit=1,
            expand=["data.default_payment_method"],
        )
        data = _field(result, "data") or []
        return subscription_snapshot(data[0]) if data else None

    async def retrieve_payment_fingerprint(self, payment_method_id: str) -> Optional[str]:
        payment_method = await self._call(
            "payment_method.retrieve", stripe.PaymentMethod.retrieve, payment_method_id
        )
        return _card_fingerprint(payment_method)

    # ── Mutations ───────────────────────────────────────────────────────────

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately."""
        await self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)
        logger.info(
            "STRIPE_SUBSCRIPTION_CANCELED",
            extra={"event": "stripe.subscription.canceled", "subscription_id": subscription_id},
        )

    async def resume_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Resume a paused subscription, billing from now."""
        subscription = await self._call(
            "subscription.resume",
            stripe.Subscription.resume,
            subscription_id,
            billing_cycle_anchor="now",
        )
        return subscription_snapshot(subscription)

    async def find_or_create_customer(
        self,
        *,
        account_id: str,
        email: str,
        name: Optional[str] = None,
    ) -> str:
        """Return the customer for this e-mail, creating one if none exists.

        The idempotency key is derived from the account id so concurrent first
        checkouts create at most one customer.
        """
        existing = await self._call("customer.list", stripe.Customer.list, email=email, limit=1)
        data = _field(existing, "data") or []
        if data:
            return _field(data[0], "id")

        params: dict[str, Any] = {"email": email, "metadata": {"account_id": account_id}}
        if name:
            params["name"] = name
        customer = await self._call(
            "customer.create",
            stripe.Customer.create,
            idempotency_key=f"customer_{account_id}",
            **params,
        )
        return _field(customer, "id")

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        account_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> str:
        """Create a subscription-mode checkout session and return its URL."""
        session = await self._call(
            "checkout.create",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            client_reference_id=account_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"account_id": account_id},
            subscription_data={"metadata": {"account_id": account_id}},
            idempotency_key=idempotency_key,
        )
        return _field(session, "url")

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its URL."""
        session = await self._call(
            "portal.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _field(session, "url")


# Global client instance (lazy init-once)
_stripe_client: Optional[StripeClient] = None
_stripe_client_lock = threading.Lock()


def get_stripe_client() -> StripeClient:
    """Get global Stripe client instance (singleton).

    Returns:
        StripeClient instance

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not configured
    """
    global _stripe_client
    if _stripe_client is None:
        with _stripe_client_lock:
            if _stripe_client is None:
                _stripe_client = StripeClient()
    return _stripe_client
