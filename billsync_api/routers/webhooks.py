"""Stripe webhook endpoint.

Error taxonomy (retry storm prevention):
  (A) Missing Stripe-Signature header                 → 400 WEBHOOK_MISSING_SIGNATURE
  (B) Signature / timestamp invalid                   → 400 WEBHOOK_SIGNATURE_INVALID
  (C) Verified body without id/type                   → 400 WEBHOOK_INVALID_PAYLOAD
  (D) Our misconfig (no API key / signing secret)     → 500 WEBHOOK_PROVIDER_MISCONFIG
  (E) Provider lookup / DB / processing error          → 500 WEBHOOK_INTERNAL_ERROR
  5xx means "redeliver": nothing was recorded in the ledger.
  4xx means "never valid": nothing was processed.

Every verified event ends in the ledger, including events with no state
effect and events for unknown customers, so redelivery stops.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billsync_api.analytics.sinks import dispatch_signals, get_lifecycle_sink
from billsync_api.billing import event_ledger
from billsync_api.billing.errors import (
    DuplicateEvent,
    ProviderLookupFailed,
    SignatureVerificationFailed,
    WebhookMisconfigured,
)
from billsync_api.billing.fraud_guard import FraudGuard
from billsync_api.billing.reconciliation import (
    AccountRef,
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationEngine,
    Transition,
    TransitionSource,
)
from billsync_api.billing.stripe_client import (
    StripeClient,
    SubscriptionSnapshot,
    get_stripe_client,
    subscription_snapshot,
)
from billsync_api.context import event_id_var, request_id_var
from billsync_api.db.session import get_session_factory
from billsync_api.utils.sanitize import payload_hash_bytes, sanitize_str

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])
logger = logging.getLogger(__name__)

PROVIDER = "stripe"

_SUBSCRIPTION_STATUS_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.paused",
    "customer.subscription.resumed",
})


# ============================================================================
# Problem Details helper
# ============================================================================


def _webhook_problem(
    request: Request,
    status: int,
    *,
    code: str,
    title: str,
    detail: str | None,
    payload_hash: str | None,
    extra: dict | None = None,
) -> JSONResponse:
    """Log once + return RFC 9457 Problem Details response.

    4xx failures → warning log.
    5xx failures → error log + Retry-After: 60 response header.
    """
    request_id = request_id_var.get()

    log_extra: dict = {
        "event": f"webhook.{code.lower()}",
        "provider": PROVIDER,
        "payload_hash": payload_hash,
        "error_code": code,
    }
    if extra:
        log_extra.update(extra)

    if status >= 500:
        logger.error(code, extra=log_extra)
    else:
        logger.warning(code, extra=log_extra)

    content: dict = {
        "type": f"urn:billsync:webhook:{code.lower()}",
        "title": title,
        "status": status,
        "provider": PROVIDER,
        "error_code": code,
        "instance": f"urn:billsync:trace:{request_id}" if request_id else str(request.url.path),
    }
    if detail is not None:
        content["detail"] = detail
    if payload_hash is not None:
        content["payload_hash"] = payload_hash

    headers = {}
    if status >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status,
        content=content,
        media_type="application/problem+json",
        headers=headers,
    )


# ============================================================================
# Stripe Webhook Handler
# ============================================================================


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    """Stripe webhook handler.

    Verify → ledger fast path → translate to a Transition → reconcile.
    """
    # ── Step 0: Raw body ingestion ───────────────────────────────────────────
    raw_body: bytes = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    # ── Step 1: Signature header (A → 400) ──────────────────────────────────
    if not stripe_signature:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_MISSING_SIGNATURE",
            title="Missing Stripe-Signature header",
            detail="Webhook requests must be signed",
            payload_hash=payload_hash,
        )

    # ── Step 2: Client + signature verification (D → 500, B → 400) ──────────
    try:
        stripe_client = get_stripe_client()
        event = stripe_client.verify_webhook(raw_body, stripe_signature)
    except (ValueError, WebhookMisconfigured):
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_PROVIDER_MISCONFIG",
            title="Webhook provider misconfiguration",
            detail="Webhook verification is not properly configured",
            payload_hash=payload_hash,
        )
    except SignatureVerificationFailed:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_SIGNATURE_INVALID",
            title="Webhook signature verification failed",
            detail="Stripe-Signature does not match the payload",
            payload_hash=payload_hash,
        )

    # ── Step 3: Body field validation (C → 400) ─────────────────────────────
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        return _webhook_problem(
            request, 400,
            code="WEBHOOK_INVALID_PAYLOAD",
            title="Invalid webhook payload",
            detail="Missing required fields: id, type",
            payload_hash=payload_hash,
        )

    event_id_var.set(event_id)
    logger.info(
        "WEBHOOK_RECEIVED",
        extra={
            "provider": PROVIDER,
            "event_type": event_type,
            "payload_hash": payload_hash,
            "payload_size": len(raw_body),
        },
    )

    db: Session = get_session_factory()()
    try:
        # ── Step 4: Ledger fast path ─────────────────────────────────────────
        if event_ledger.has_processed(db, event_id):
            logger.info(
                "WEBHOOK_ALREADY_PROCESSED",
                extra={"provider": PROVIDER, "event_type": event_type},
            )
            return {"received": True, "status": "already_processed"}

        # ── Step 5: Business processing (E → 500) ───────────────────────────
        result = await _process_stripe_event(db, stripe_client, event)

        if result is not None and result.outcome == ReconcileOutcome.DUPLICATE:
            return {"received": True, "status": "already_processed"}
        if result is not None and result.signals:
            background_tasks.add_task(dispatch_signals, result.signals, get_lifecycle_sink())

        return {"received": True, "status": "processed"}

    except DuplicateEvent:
        db.rollback()
        return {"received": True, "status": "already_processed"}
    except Exception as exc:
        db.rollback()
        return _webhook_problem(
            request, 500,
            code="WEBHOOK_INTERNAL_ERROR",
            title="Internal processing error",
            detail="An internal error occurred while processing the webhook",
            payload_hash=payload_hash,
            extra={
                "event_type": event_type,
                "error_type": type(exc).__name__,
                "error_msg": sanitize_str(str(exc)),
            },
        )
    finally:
        db.close()
        event_id_var.set("")


# ============================================================================
# Event → Transition
# ============================================================================


def _event_time(event: dict) -> datetime:
    created = event.get("created")
    if isinstance(created, (int, float)):
        return datetime.fromtimestamp(created, tz=timezone.utc)
    return datetime.now(timezone.utc).replace(microsecond=0)


def _ref_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _audit_snapshot(event: dict, obj: dict) -> dict:
    """Small ledger payload: identifiers and status, no customer PII."""
    return {
        "id": event.get("id"),
        "type": event.get("type"),
        "created": event.get("created"),
        "livemode": event.get("livemode"),
        "object": obj.get("object"),
        "object_id": obj.get("id"),
        "status": obj.get("status"),
        "customer": _ref_id(obj.get("customer")),
    }


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    """Subscription of an invoice across API versions."""
    parent_details = (invoice.get("parent") or {}).get("subscription_details") or {}
    details = invoice.get("subscription_details") or {}
    return (
        _ref_id(parent_details.get("subscription"))
        or _ref_id(details.get("subscription"))
        or _ref_id(invoice.get("subscription"))
    )


def _cancel_reason(subscription: dict) -> str:
    details = subscription.get("cancellation_details") or {}
    return details.get("comment") or details.get("feedback") or details.get("reason") or "unknown"


def _base_transition(event: dict, obj: dict, **kwargs: Any) -> Transition:
    return Transition(
        source=TransitionSource.WEBHOOK,
        observed_at=_event_time(event),
        ledger_key=event["id"],
        event_type=event["type"],
        payload=_audit_snapshot(event, obj),
        **kwargs,
    )


async def _subscription_status_after_invoice(
    stripe_client: StripeClient, subscription_id: str, fallback: str
) -> Optional[SubscriptionSnapshot]:
    """Current provider view of an invoice's subscription; None means use ``fallback``."""
    try:
        return await stripe_client.retrieve_subscription(subscription_id)
    except ProviderLookupFailed:
        logger.warning(
            "WEBHOOK_SUBSCRIPTION_LOOKUP_FALLBACK",
            extra={"subscription_id": subscription_id, "fallback_status": fallback},
        )
        return None


async def _translate_event(
    stripe_client: StripeClient, event: dict
) -> Optional[tuple[AccountRef, Transition]]:
    """Map a verified Stripe event to (account ref, transition), or None."""
    event_type = event["type"]
    obj: dict = (event.get("data") or {}).get("object") or {}

    if event_type in _SUBSCRIPTION_STATUS_EVENTS or event_type == "customer.subscription.deleted":
        customer_id = _ref_id(obj.get("customer"))
        if not customer_id:
            return None
        snapshot = subscription_snapshot(obj)
        deleted = event_type == "customer.subscription.deleted"
        transition = _base_transition(
            event, obj,
            provider_status="canceled" if deleted else snapshot.status,
            subscription_id=snapshot.subscription_id,
            price_id=snapshot.price_id,
            payment_fingerprint=None if deleted else snapshot.payment_fingerprint,
            cancel_reason=_cancel_reason(obj) if deleted else None,
            signal_properties={"plan": snapshot.plan, "interval": snapshot.interval},
        )
        return AccountRef.by_customer(customer_id), transition

    if event_type == "checkout.session.completed":
        subscription_id = _ref_id(obj.get("subscription"))
        if obj.get("mode") != "subscription" or not subscription_id:
            return None
        subscription = await stripe_client.retrieve_subscription(subscription_id)
        fingerprint = subscription.payment_fingerprint
        payment_method = _ref_id(obj.get("payment_method"))
        if fingerprint is None and payment_method:
            fingerprint = await stripe_client.retrieve_payment_fingerprint(payment_method)
        account_id = obj.get("client_reference_id")
        customer_id = _ref_id(obj.get("customer")) or subscription.customer_id
        if account_id:
            ref = AccountRef.by_account(account_id)
        elif customer_id:
            ref = AccountRef.by_customer(customer_id)
        else:
            return None
        transition = _base_transition(
            event, obj,
            provider_status=subscription.status,
            subscription_id=subscription.subscription_id,
            price_id=subscription.price_id,
            payment_fingerprint=fingerprint,
            customer_id=customer_id if account_id else None,
            checkout_completion=True,
            signal_properties={"plan": subscription.plan, "interval": subscription.interval},
        )
        return ref, transition

    if event_type in ("invoice.payment_succeeded", "invoice.payment_failed", "invoice.finalized"):
        subscription_id = _invoice_subscription_id(obj)
        customer_id = _ref_id(obj.get("customer"))
        if not subscription_id or not customer_id:
            return None
        if event_type == "invoice.payment_succeeded":
            fallback = "active"
        elif event_type == "invoice.payment_failed":
            fallback = "past_due"
        else:
            fallback = "active" if obj.get("status") == "paid" else "past_due"

        current = await _subscription_status_after_invoice(stripe_client, subscription_id, fallback)
        properties: dict[str, Any] = {}
        if event_type == "invoice.payment_succeeded":
            amount = obj.get("amount_paid")
            properties = {
                "plan": current.plan if current else None,
                "interval": current.interval if current else None,
                "amount": amount / 100 if isinstance(amount, (int, float)) else None,
                "currency": obj.get("currency"),
            }
        transition = _base_transition(
            event, obj,
            provider_status=current.status if current else fallback,
            subscription_id=subscription_id,
            price_id=current.price_id if current else None,
            signal_properties=properties,
        )
        return AccountRef.by_customer(customer_id), transition

    return None


async def _process_stripe_event(
    db: Session, stripe_client: StripeClient, event: dict
) -> Optional[ReconcileResult]:
    """Process a verified event by type.

    Returns the reconciliation result, or None for events without a state
    effect (those are recorded in the ledger directly).

    Raises:
        DuplicateEvent: A concurrent delivery recorded a no-effect event first
        ProviderLookupFailed: Provider unreachable while the event needs it
    """
    translated = await _translate_event(stripe_client, event)

    if translated is None:
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(
            "WEBHOOK_EVENT_NOT_RECONCILED",
            extra={"provider": PROVIDER, "event_type": event["type"]},
        )
        event_ledger.record_processed(
            db,
            event["id"],
            event["type"],
            related_subscription_id=_ref_id(obj.get("subscription")) or _invoice_subscription_id(obj),
            payload=_audit_snapshot(event, obj),
        )
        db.commit()
        return None

    ref, transition = translated
    engine = ReconciliationEngine(db, fraud_guard=FraudGuard(db, stripe_client))
    return await engine.reconcile(ref, transition)
