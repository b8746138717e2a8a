"""Session endpoints.

- POST /api/auth/session: exchange an identity-provider assertion for the cookie
- GET  /api/auth/session: current credential claims
- POST /api/auth/session/refresh: explicit re-read + rotate
- POST /api/auth/signout: clear the cookie

SECURITY:
- The assertion is verified (signature, expiry, audience) before any write
- Account ids come from the assertion ``sub`` only, never from the body
- Assertions and cookies are never logged
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billsync_api.accounts import ensure_customer, get_or_create_account
from billsync_api.analytics.sinks import (
    LifecycleSignal,
    SignalKind,
    dispatch_signals,
    get_lifecycle_sink,
)
from billsync_api.auth.identity import IdentityAssertionInvalid, verify_identity_assertion
from billsync_api.auth.session_auth import (
    SessionAuthContext,
    create_session_problem,
    get_session_context,
    session_view,
)
from billsync_api.auth.session_token import (
    SessionSnapshot,
    clear_session_cookie,
    get_session_broker,
    set_session_cookie,
)
from billsync_api.billing.errors import AccountNotFound, BillingError, CredentialRotationFailed
from billsync_api.billing.stripe_client import get_stripe_client
from billsync_api.context import account_id_var
from billsync_api.db.session import get_db
from billsync_api.schemas import SessionView, SignInRequest

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/session", response_model=SessionView)
async def sign_in(
    body: SignInRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> SessionView:
    """Verify the assertion, create the account on first sign-in, mint the cookie.

    Raises:
        HTTPException 401: Assertion invalid or expired
    """
    try:
        principal = verify_identity_assertion(body.id_token)
    except IdentityAssertionInvalid as e:
        logger.info(
            "auth.sign_in.rejected",
            extra={"event": "auth.sign_in.rejected", "reason": str(e)[:100]},
        )
        raise create_session_problem(request, "Sign-in assertion is invalid or expired.")

    account_id_var.set(principal.id)
    account, created = get_or_create_account(db, principal)

    if created:
        background_tasks.add_task(
            dispatch_signals,
            [LifecycleSignal(SignalKind.SIGN_UP, account.id, {"email_verified": True})],
            get_lifecycle_sink(),
        )
        # Checkout creates the customer anyway; failing here only delays it
        try:
            await ensure_customer(db, get_stripe_client(), account)
        except (BillingError, IntegrityError, ValueError) as e:
            logger.warning(
                "auth.sign_in.customer_deferred",
                extra={
                    "event": "auth.sign_in.customer_deferred",
                    "account_id": account.id,
                    "error_type": type(e).__name__,
                },
            )

    credential = get_session_broker().mint(SessionSnapshot.from_account(account))
    set_session_cookie(response, credential)
    logger.info(
        "auth.sign_in.success",
        extra={"event": "auth.sign_in.success", "account_id": account.id, "created": created},
    )
    return session_view(credential)


@router.get("/session", response_model=SessionView)
async def current_session(
    session: SessionAuthContext = Depends(get_session_context),
) -> SessionView:
    return session_view(session.credential)


@router.post("/session/refresh", response_model=SessionView)
async def refresh_session(
    request: Request,
    response: Response,
    session: SessionAuthContext = Depends(get_session_context),
    db: Session = Depends(get_db),
) -> SessionView:
    """Re-read the account now instead of waiting for the refresh interval.

    Raises:
        HTTPException 401: Account deleted (cookie cleared)
        HTTPException 503: Rotation failed; the old cookie stays valid
    """
    try:
        credential = get_session_broker().refresh(db, session.account_id, existing=session.credential)
    except AccountNotFound:
        problem = create_session_problem(request, "Account no longer exists.")
        gone = JSONResponse(
            status_code=problem.status_code,
            content=problem.detail,
            media_type="application/problem+json",
        )
        clear_session_cookie(gone)
        return gone
    except CredentialRotationFailed:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session could not be refreshed. Please try again.",
        )

    set_session_cookie(response, credential)
    return session_view(credential)


@router.post("/signout", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(response: Response) -> Response:
    clear_session_cookie(response)
    response.status_code = status.HTTP_204_NO_CONTENT
    return response
