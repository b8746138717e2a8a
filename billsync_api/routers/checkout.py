"""Stripe checkout endpoints.

- GET  /api/stripe/post-checkout: browser lands here from hosted checkout
- POST /api/stripe/create-checkout-session: start hosted checkout
- POST /api/stripe/create-portal: open the billing portal

The post-checkout callback is the synchronous write path. It races the
webhook for the same checkout; both go through ReconciliationEngine, so
whichever commits second either re-applies the same state or loses on the
provider timestamp. Every failure ends on a page the browser can recover
from (the processing page polls subscription-status), never on a dead end.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billsync_api.accounts import ensure_customer, load_account
from billsync_api.analytics.sinks import dispatch_signals, get_lifecycle_sink
from billsync_api.auth.session_auth import (
    SessionAuthContext,
    get_session_context,
    read_session_credential,
    rotate_session_cookie,
)
from billsync_api.billing.errors import AccountNotFound, ProviderLookupFailed
from billsync_api.billing.fraud_guard import FraudGuard, is_disposable_email
from billsync_api.billing.reconciliation import (
    AccountRef,
    ReconcileOutcome,
    ReconciliationEngine,
    Transition,
    TransitionSource,
)
from billsync_api.billing.status_mapper import SubscriptionState
from billsync_api.billing.stripe_client import get_stripe_client
from billsync_api.config.env import (
    get_allowed_price_ids,
    get_base_url,
    get_checkout_cancel_url,
)
from billsync_api.db.session import get_db
from billsync_api.gate.access_gate import SIGN_IN_PATH
from billsync_api.schemas import CheckoutSessionRequest, PortalRequest, RedirectUrlResponse

router = APIRouter(prefix="/api/stripe", tags=["checkout"])
logger = logging.getLogger(__name__)

PROCESSING_PATH = "/stripe/processing-payment"
ERROR_PATH = "/error"

# Shown for every fraud veto; the reason stays in the logs
GENERIC_REJECTION_MESSAGE = "We could not complete your subscription. Please contact support."


def _error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(
        f"{ERROR_PATH}?message={quote(message)}", status_code=status.HTTP_303_SEE_OTHER
    )


def _processing_redirect() -> RedirectResponse:
    return RedirectResponse(PROCESSING_PATH, status_code=status.HTTP_303_SEE_OTHER)


# ============================================================================
# Checkout redirect callback
# ============================================================================


@router.get("/post-checkout")
async def post_checkout(
    request: Request,
    background_tasks: BackgroundTasks,
    session_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Reconcile the finished checkout, rotate the cookie, then redirect."""
    if not session_id:
        return _error_redirect("Invalid checkout session")

    credential = read_session_credential(request)
    if credential is None:
        callback = f"/api/stripe/post-checkout?session_id={session_id}"
        return RedirectResponse(
            f"{SIGN_IN_PATH}?callbackUrl={quote(callback, safe='')}",
            status_code=status.HTTP_303_SEE_OTHER,
        )
    account_id = credential.snapshot.account_id

    stripe_client = get_stripe_client()
    # Whole seconds, like the provider timestamps it is compared with
    observed_at = datetime.now(timezone.utc).replace(microsecond=0)
    try:
        checkout = await stripe_client.retrieve_checkout(session_id)
    except ProviderLookupFailed as e:
        logger.warning(
            "POST_CHECKOUT_LOOKUP_FAILED",
            extra={
                "event": "checkout.redirect.lookup_failed",
                "account_id": account_id,
                "session_id": session_id,
                "operation": e.operation,
            },
        )
        return _processing_redirect()

    if checkout.client_reference_id != account_id:
        logger.warning(
            "POST_CHECKOUT_SESSION_MISMATCH",
            extra={
                "event": "checkout.redirect.mismatch",
                "account_id": account_id,
                "session_id": session_id,
                "client_reference_id": checkout.client_reference_id,
            },
        )
        return _error_redirect("Session mismatch during checkout")

    subscription = checkout.subscription
    if subscription is None and checkout.customer_id:
        try:
            subscription = await stripe_client.find_active_subscription(checkout.customer_id)
        except ProviderLookupFailed:
            subscription = None
    if subscription is None:
        logger.info(
            "POST_CHECKOUT_NO_SUBSCRIPTION_YET",
            extra={
                "event": "checkout.redirect.pending",
                "account_id": account_id,
                "session_id": session_id,
            },
        )
        return _processing_redirect()

    transition = Transition(
        provider_status=subscription.status,
        source=TransitionSource.CHECKOUT_REDIRECT,
        observed_at=observed_at,
        subscription_id=subscription.subscription_id,
        customer_id=checkout.customer_id or subscription.customer_id,
        price_id=subscription.price_id or checkout.price_id,
        payment_fingerprint=subscription.payment_fingerprint,
        ledger_key=f"checkout:{session_id}",
        event_type="checkout.redirect",
        payload={
            "session_id": session_id,
            "subscription_id": subscription.subscription_id,
            "status": subscription.status,
            "payment_status": checkout.payment_status,
        },
        checkout_completion=True,
        signal_properties={"plan": subscription.plan, "interval": subscription.interval},
    )
    engine = ReconciliationEngine(db, fraud_guard=FraudGuard(db, stripe_client))
    try:
        result = await engine.reconcile(AccountRef.by_account(account_id), transition)
    except ProviderLookupFailed:
        # Compensating cancel failed; the webhook retries the veto
        logger.error(
            "POST_CHECKOUT_COMPENSATION_FAILED",
            extra={"event": "checkout.redirect.compensation_failed", "session_id": session_id},
        )
        return _processing_redirect()

    if result.outcome == ReconcileOutcome.REJECTED:
        return _error_redirect(GENERIC_REJECTION_MESSAGE)
    if result.signals:
        background_tasks.add_task(dispatch_signals, result.signals, get_lifecycle_sink())

    response = _processing_redirect()
    rotate_session_cookie(response, db, credential)
    return response


# ============================================================================
# Checkout session / billing portal
# ============================================================================


@router.post("/create-checkout-session", response_model=RedirectUrlResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> RedirectUrlResponse:
    """Start hosted checkout for the signed-in account.

    Raises:
        HTTPException 400: Disposable e-mail, or price not offered
        HTTPException 404: Account no longer exists
        HTTPException 409: Provider customer belongs to another account
        HTTPException 502: Provider unreachable
    """
    try:
        account = load_account(db, session.account_id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    if is_disposable_email(account.email):
        logger.warning(
            "CHECKOUT_DISPOSABLE_EMAIL",
            extra={"event": "checkout.create.disposable_email", "account_id": account.id},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unable to start checkout for this account. Please contact support.",
        )

    allowed = get_allowed_price_ids()
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Checkout is not configured",
        )
    price_id = body.price_id or allowed[0]
    if price_id not in allowed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid price selection")

    stripe_client = get_stripe_client()
    try:
        customer_id = await ensure_customer(db, stripe_client, account)
        is_renewal = account.subscription_state == SubscriptionState.CANCELED.value
        stamp = int(time.time() * 1000)
        idempotency_key = (
            f"renewal_{account.id}_{stamp}"
            if is_renewal
            else f"checkout_{account.id}_{price_id}_{stamp}"
        )
        url = await stripe_client.create_checkout_session(
            customer_id=customer_id,
            account_id=account.id,
            price_id=price_id,
            success_url=f"{get_base_url()}/api/stripe/post-checkout?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=get_checkout_cancel_url(),
            idempotency_key=idempotency_key,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Billing profile is linked to another account",
        )
    except ProviderLookupFailed:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable. Please try again.",
        )

    logger.info(
        "CHECKOUT_SESSION_CREATED",
        extra={
            "event": "checkout.create.success",
            "account_id": account.id,
            "price_id": price_id,
            "renewal": is_renewal,
        },
    )
    return RedirectUrlResponse(url=url)


@router.post("/create-portal", response_model=RedirectUrlResponse)
async def create_portal(
    body: PortalRequest,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> RedirectUrlResponse:
    """Open the provider billing portal; ``return_url`` must stay on BASE_URL."""
    base_url = get_base_url()
    return_url = body.return_url or base_url
    if not return_url.startswith(base_url):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid return_url")

    try:
        account = load_account(db, session.account_id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if not account.customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No associated billing customer found",
        )

    try:
        url = await get_stripe_client().create_portal_session(
            customer_id=account.customer_id, return_url=return_url
        )
    except ProviderLookupFailed:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable. Please try again.",
        )
    return RedirectUrlResponse(url=url)
