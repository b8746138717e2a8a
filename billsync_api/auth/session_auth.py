"""Cookie session authentication for account endpoints.

FLOW:
1. Browser signs in via POST /api/auth/session -> receives the session cookie
2. AccessGateMiddleware decodes (and, when due, refreshes) the cookie and
   stores the credential on request.state
3. Endpoints depend on get_session_context, which reuses that credential or
   decodes the cookie itself for paths the gate exempts

SECURITY:
- Signature and expiry are verified on every request
- The embedded snapshot is display/gating data only; endpoints that change
  billing state re-read the account row
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billsync_api.auth.session_token import (
    SESSION_COOKIE_NAME,
    SessionCredential,
    get_session_broker,
    set_session_cookie,
)
from billsync_api.billing.errors import (
    AccountNotFound,
    CredentialRotationFailed,
    InvalidSessionCredential,
)
from billsync_api.context import account_id_var, request_id_var
from billsync_api.schemas import ProblemDetail, SessionView

logger = logging.getLogger(__name__)


class SessionAuthContext:
    """Session authentication context for cookie-authenticated requests."""

    def __init__(self, credential: SessionCredential):
        self.credential = credential
        self.account_id = credential.snapshot.account_id
        self.email = credential.snapshot.email

    @property
    def snapshot(self):
        return self.credential.snapshot


def session_view(credential: SessionCredential) -> SessionView:
    snapshot = credential.snapshot
    return SessionView(
        account_id=snapshot.account_id,
        email=snapshot.email,
        name=snapshot.name,
        subscription_state=snapshot.subscription_state,
        has_lifetime_access=snapshot.has_lifetime_access,
        onboarding_completed=snapshot.onboarding_completed,
        issued_at=credential.issued_at,
        refreshed_at=credential.refreshed_at,
        expires_at=credential.expires_at,
    )


def create_session_problem(request: Request, detail: str) -> HTTPException:
    """Create an RFC 9457 401 for session auth errors."""
    request_id = request_id_var.get()
    problem = ProblemDetail(
        type="https://billsync.dev/problems/unauthorized",
        title="Unauthorized",
        status=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        instance=f"urn:billsync:trace:{request_id}" if request_id else str(request.url.path),
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=problem.model_dump(exclude_none=True),
    )


def read_session_credential(request: Request) -> Optional[SessionCredential]:
    """Credential for this request, or None when absent/invalid."""
    credential = getattr(request.state, "session_credential", None)
    if credential is not None:
        return credential

    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    try:
        return get_session_broker().decode(token)
    except InvalidSessionCredential as e:
        logger.info(
            "SESSION_INVALID",
            extra={"event": "session.invalid", "reason": str(e)[:100]},
        )
        return None


async def get_session_context(request: Request) -> SessionAuthContext:
    """FastAPI dependency: authenticated session or 401 problem+json.

    Raises:
        HTTPException: 401 if the cookie is missing, invalid or expired
    """
    credential = read_session_credential(request)
    if credential is None:
        raise create_session_problem(request, "Not signed in. Please sign in again.")

    account_id_var.set(credential.snapshot.account_id)
    return SessionAuthContext(credential)


def rotate_session_cookie(
    response: Response, db: Session, credential: SessionCredential
) -> Optional[SessionCredential]:
    """Re-read the account and re-issue the cookie on ``response``.

    Failure is logged and swallowed: the old cookie stays valid and the
    gate's safety-net refresh picks the new state up within the refresh
    interval.
    """
    account_id = credential.snapshot.account_id
    try:
        refreshed = get_session_broker().refresh(db, account_id, existing=credential)
    except (CredentialRotationFailed, AccountNotFound, SQLAlchemyError) as e:
        logger.warning(
            "CREDENTIAL_ROTATION_FAILED",
            extra={
                "event": "session.rotation_failed",
                "account_id": account_id,
                "error_type": type(e).__name__,
            },
        )
        return None
    set_session_cookie(response, refreshed)
    return refreshed
