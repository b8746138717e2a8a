"""Access gate middleware.

Wires the pure ``decide`` function to HTTP:

1. Decode the session cookie (invalid/expired → treated as absent, cookie cleared)
2. Safety-net refresh: when the credential's snapshot is older than the
   refresh interval, re-read the account once and rotate the cookie.
   A failed refresh keeps the stale credential (bounded staleness, never a
   lock-out); a deleted account drops the credential.
3. Classify and either forward or redirect (307)

The decoded (possibly refreshed) credential is published on
``request.state.session_credential`` for downstream dependencies.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from billsync_api.auth.session_token import (
    SESSION_COOKIE_NAME,
    SessionCredential,
    SessionTokenBroker,
    clear_session_cookie,
    get_session_broker,
    set_session_cookie,
)
from billsync_api.billing.errors import (
    AccountNotFound,
    CredentialRotationFailed,
    InvalidSessionCredential,
)
from billsync_api.db.session import get_session_factory
from billsync_api.gate.access_gate import decide

logger = logging.getLogger(__name__)


def _handler_set_session_cookie(response: Response) -> bool:
    prefix = f"{SESSION_COOKIE_NAME}="
    return any(
        value.startswith(prefix) for value in response.headers.getlist("set-cookie")
    )


class AccessGateMiddleware(BaseHTTPMiddleware):
    """Session-cookie access gate with bounded-staleness refresh."""

    def _safety_net_refresh(
        self, broker: SessionTokenBroker, credential: SessionCredential
    ) -> tuple[Optional[SessionCredential], bool]:
        """Return (credential to use, whether the cookie must be re-issued)."""
        account_id = credential.snapshot.account_id
        db = get_session_factory()()
        try:
            refreshed = broker.refresh(db, account_id, existing=credential)
        except AccountNotFound:
            logger.info(
                "SESSION_ACCOUNT_GONE",
                extra={"event": "session.account_gone", "account_id": account_id},
            )
            return None, False
        except (CredentialRotationFailed, SQLAlchemyError) as e:
            logger.warning(
                "CREDENTIAL_ROTATION_FAILED",
                extra={
                    "event": "session.refresh_failed",
                    "account_id": account_id,
                    "error_type": type(e).__name__,
                },
            )
            return credential, False
        finally:
            db.close()

        logger.debug(
            "SESSION_SAFETY_NET_REFRESH",
            extra={
                "event": "session.safety_net_refresh",
                "account_id": account_id,
                "subscription_state": refreshed.snapshot.subscription_state.value,
            },
        )
        return refreshed, True

    async def dispatch(self, request: Request, call_next) -> Response:
        broker = get_session_broker()
        path = request.url.path

        token = request.cookies.get(SESSION_COOKIE_NAME)
        credential: Optional[SessionCredential] = None
        clear_cookie = False
        reissue = False

        if token:
            try:
                credential = broker.decode(token)
            except InvalidSessionCredential:
                clear_cookie = True

        if credential is not None and broker.needs_refresh(credential):
            credential, reissue = self._safety_net_refresh(broker, credential)
            clear_cookie = credential is None

        request.state.session_credential = credential
        decision = decide(credential.snapshot if credential else None, path)

        if decision.allowed:
            response = await call_next(request)
        else:
            logger.info(
                "ACCESS_GATE_REDIRECT",
                extra={
                    "event": "gate.redirect",
                    "path": path,
                    "action": decision.action.value,
                    "account_id": credential.snapshot.account_id if credential else None,
                    "subscription_state": (
                        credential.snapshot.subscription_state.value if credential else None
                    ),
                },
            )
            response = RedirectResponse(decision.location, status_code=307)

        if not _handler_set_session_cookie(response):
            if reissue and credential is not None:
                set_session_cookie(response, credential)
            elif clear_cookie:
                clear_session_cookie(response)
        return response
