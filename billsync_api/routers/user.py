"""Account endpoints for the signed-in user.

- GET    /api/user/subscription-status: authoritative state, read from the row
- DELETE /api/user/delete: cancel at the provider (best effort), delete the row
- POST   /api/user/complete-onboarding: set the onboarding flag
- POST   /api/subscription/resume: resume a paused subscription

Endpoints that change state rotate the session cookie before responding, so
the very next request through the access gate already sees the new state.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from billsync_api.accounts import delete_account, load_account, mark_onboarding_completed
from billsync_api.analytics.sinks import (
    LifecycleSignal,
    SignalKind,
    dispatch_signals,
    get_lifecycle_sink,
)
from billsync_api.auth.session_auth import (
    SessionAuthContext,
    get_session_context,
    rotate_session_cookie,
    session_view,
)
from billsync_api.auth.session_token import clear_session_cookie
from billsync_api.billing.errors import AccountNotFound, ProviderLookupFailed
from billsync_api.billing.fraud_guard import FraudGuard
from billsync_api.billing.reconciliation import (
    AccountRef,
    ReconcileOutcome,
    ReconciliationEngine,
    Transition,
    TransitionSource,
)
from billsync_api.billing.status_mapper import SubscriptionState, parse_state
from billsync_api.billing.stripe_client import get_stripe_client
from billsync_api.db.models import Account
from billsync_api.db.session import get_db
from billsync_api.schemas import (
    DeleteAccountResponse,
    OnboardingRequest,
    ResumeSubscriptionRequest,
    SessionView,
    SubscriptionStatusResponse,
)

router = APIRouter(prefix="/api", tags=["account"])
logger = logging.getLogger(__name__)


def _load_or_404(db: Session, account_id: str) -> Account:
    try:
        return load_account(db, account_id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")


def _status_response(account: Account) -> SubscriptionStatusResponse:
    return SubscriptionStatusResponse(
        subscription_state=parse_state(account.subscription_state) or SubscriptionState.NEW,
        subscription_id=account.subscription_id,
        price_id=account.price_id,
        has_lifetime_access=account.has_lifetime_access,
        onboarding_completed=account.onboarding_completed,
        subscribed_at=account.subscribed_at,
    )


@router.get("/user/subscription-status", response_model=SubscriptionStatusResponse)
async def subscription_status(
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> SubscriptionStatusResponse:
    """Current state straight from the database (the processing page polls this)."""
    return _status_response(_load_or_404(db, session.account_id))


@router.delete("/user/delete", response_model=DeleteAccountResponse)
async def delete_user(
    response: Response,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> DeleteAccountResponse:
    """Delete the account.

    The provider cancellation is best effort: the row is deleted either way,
    and a later ``customer.subscription.deleted`` for the vanished customer
    is recorded as not-found.
    """
    account = _load_or_404(db, session.account_id)

    canceled = False
    if account.subscription_id:
        try:
            await get_stripe_client().cancel_subscription(account.subscription_id)
            canceled = True
        except ProviderLookupFailed as e:
            logger.warning(
                "ACCOUNT_DELETE_CANCEL_FAILED",
                extra={
                    "event": "account.delete.cancel_failed",
                    "account_id": account.id,
                    "subscription_id": account.subscription_id,
                    "operation": e.operation,
                },
            )

    try:
        delete_account(db, account.id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    clear_session_cookie(response)
    return DeleteAccountResponse(deleted=True, subscription_canceled=canceled)


@router.post("/user/complete-onboarding", response_model=SessionView)
async def complete_onboarding(
    body: OnboardingRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> SessionView:
    """Mark onboarding done, rotate the cookie, emit ``onboarding_complete`` once."""
    try:
        _, newly_completed = mark_onboarding_completed(db, session.account_id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    if newly_completed:
        signal = LifecycleSignal(
            SignalKind.ONBOARDING_COMPLETE,
            session.account_id,
            {"variant": body.variant},
        )
        background_tasks.add_task(dispatch_signals, [signal], get_lifecycle_sink())

    refreshed = rotate_session_cookie(response, db, session.credential)
    return session_view(refreshed or session.credential)


@router.post("/subscription/resume", response_model=SubscriptionStatusResponse)
async def resume_subscription(
    body: ResumeSubscriptionRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> SubscriptionStatusResponse:
    """Resume the caller's own paused subscription.

    Raises:
        HTTPException 403: Subscription belongs to someone else
        HTTPException 502: Provider refused or is unreachable
    """
    account = _load_or_404(db, session.account_id)
    if account.subscription_id != body.subscription_id:
        logger.warning(
            "RESUME_OWNERSHIP_MISMATCH",
            extra={
                "event": "subscription.resume.forbidden",
                "account_id": account.id,
                "subscription_id": body.subscription_id,
            },
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Subscription not found")

    stripe_client = get_stripe_client()
    try:
        resumed = await stripe_client.resume_subscription(body.subscription_id)
    except ProviderLookupFailed:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not resume the subscription. Please try again.",
        )

    transition = Transition(
        provider_status=resumed.status,
        source=TransitionSource.USER_ACTION,
        observed_at=datetime.now(timezone.utc).replace(microsecond=0),
        subscription_id=resumed.subscription_id,
        price_id=resumed.price_id,
        event_type="subscription.resume",
        signal_properties={"plan": resumed.plan, "interval": resumed.interval},
    )
    engine = ReconciliationEngine(db, fraud_guard=FraudGuard(db, stripe_client))
    result = await engine.reconcile(AccountRef.by_account(account.id), transition)
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if result.signals:
        background_tasks.add_task(dispatch_signals, result.signals, get_lifecycle_sink())

    rotate_session_cookie(response, db, session.credential)
    return _status_response(_load_or_404(db, account.id))
