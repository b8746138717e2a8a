"""Session credential broker.

The credential is an HS256 JWT carried in an HttpOnly cookie. It embeds a
denormalized snapshot of the account (subscription state, lifetime flag,
onboarding flag, display fields) so AccessGate can classify requests without
a database round trip.

The snapshot is a CACHE, never the system of record. Its staleness is bounded:

  - the synchronous paths that change state (post-checkout, resume,
    onboarding, explicit refresh) rotate the cookie in the same response;
  - every other request re-reads the account once the ``rat`` (refreshed-at)
    claim is older than the refresh interval.

So an embedded state lags the account by at most ``max_staleness`` (the
refresh interval, default 5 minutes) for any client that keeps making
requests. Webhook-driven changes rely on that bound.

Claims:
  sub                   account id
  email, name           display fields
  subscription_state    canonical SubscriptionState value
  has_lifetime_access   bool
  onboarding_completed  bool
  iat                   original issuance (preserved across rotations)
  rat                   last refresh/rotation
  exp                   expiry (extended on each rotation)
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.responses import Response

from billsync_api.billing.errors import (
    AccountNotFound,
    CredentialRotationFailed,
    InvalidSessionCredential,
)
from billsync_api.billing.status_mapper import SubscriptionState, parse_state
from billsync_api.config.env import (
    get_session_max_age_seconds,
    get_session_refresh_interval_seconds,
    get_session_secret,
    is_production_env,
)
from billsync_api.db.models import Account

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "billsync.session-token"
ALGORITHM = "HS256"


class SessionSnapshot(BaseModel):
    """Account fields embedded in the credential."""

    account_id: str
    email: str
    name: Optional[str] = None
    subscription_state: SubscriptionState = SubscriptionState.NEW
    has_lifetime_access: bool = False
    onboarding_completed: bool = False

    @classmethod
    def from_account(cls, account: Account) -> "SessionSnapshot":
        return cls(
            account_id=account.id,
            email=account.email,
            name=account.name,
            subscription_state=parse_state(account.subscription_state) or SubscriptionState.NEW,
            has_lifetime_access=bool(account.has_lifetime_access),
            onboarding_completed=bool(account.onboarding_completed),
        )


class SessionCredential(BaseModel):
    """A signed credential plus its decoded contents."""

    token: str
    snapshot: SessionSnapshot
    issued_at: datetime
    refreshed_at: datetime
    expires_at: datetime

    max_age_seconds: int = Field(default=0, description="Cookie Max-Age at issuance")


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


def _from_epoch(value: object) -> datetime:
    if not isinstance(value, (int, float)):
        raise InvalidSessionCredential("timestamp claim is not numeric")
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SessionTokenBroker:
    """Mints, rotates, refreshes and decodes session credentials."""

    def __init__(
        self,
        secret: str,
        *,
        max_age_seconds: int,
        refresh_interval_seconds: int,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret
        self.max_age = timedelta(seconds=max_age_seconds)
        self.refresh_interval = timedelta(seconds=refresh_interval_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def max_staleness(self) -> timedelta:
        """Upper bound on how far an embedded snapshot may lag the account."""
        return self.refresh_interval

    def _now(self) -> datetime:
        # Second resolution keeps in-memory credentials equal to decoded ones
        return self._clock().astimezone(timezone.utc).replace(microsecond=0)

    def _sign(self, snapshot: SessionSnapshot, issued_at: datetime, now: datetime) -> SessionCredential:
        expires_at = now + self.max_age
        claims = {
            "sub": snapshot.account_id,
            "email": snapshot.email,
            "name": snapshot.name,
            "subscription_state": snapshot.subscription_state.value,
            "has_lifetime_access": snapshot.has_lifetime_access,
            "onboarding_completed": snapshot.onboarding_completed,
            "iat": _epoch(issued_at),
            "rat": _epoch(now),
            "exp": _epoch(expires_at),
        }
        token = jwt.encode(claims, self._secret, algorithm=ALGORITHM)
        return SessionCredential(
            token=token,
            snapshot=snapshot,
            issued_at=issued_at,
            refreshed_at=now,
            expires_at=expires_at,
            max_age_seconds=int(self.max_age.total_seconds()),
        )

    def mint(self, snapshot: SessionSnapshot) -> SessionCredential:
        """Issue a brand-new credential (sign-in)."""
        now = self._now()
        credential = self._sign(snapshot, issued_at=now, now=now)
        logger.info(
            "SESSION_MINTED",
            extra={"event": "session.minted", "account_id": snapshot.account_id},
        )
        return credential

    def rotate(self, existing: SessionCredential, snapshot: SessionSnapshot) -> SessionCredential:
        """Re-sign with a new snapshot, keeping the original issuance time.

        Raises:
            CredentialRotationFailed: Subject mismatch or signing failure
        """
        if existing.snapshot.account_id != snapshot.account_id:
            raise CredentialRotationFailed(
                "credential subject does not match snapshot",
                account_id=snapshot.account_id,
            )
        try:
            credential = self._sign(snapshot, issued_at=existing.issued_at, now=self._now())
        except JWTError as e:
            raise CredentialRotationFailed(str(e), account_id=snapshot.account_id) from e
        logger.info(
            "SESSION_ROTATED",
            extra={
                "event": "session.rotated",
                "account_id": snapshot.account_id,
                "subscription_state": snapshot.subscription_state.value,
                "previous_subscription_state": existing.snapshot.subscription_state.value,
            },
        )
        return credential

    def refresh(
        self,
        db: Session,
        account_id: str,
        existing: Optional[SessionCredential] = None,
    ) -> SessionCredential:
        """Re-read the account and rotate (or mint, without ``existing``).

        Raises:
            AccountNotFound: The account was deleted
            CredentialRotationFailed: Signing failed
        """
        account = db.get(Account, account_id, populate_existing=True)
        if account is None:
            raise AccountNotFound(account_id=account_id)
        snapshot = SessionSnapshot.from_account(account)
        if existing is None:
            return self.mint(snapshot)
        return self.rotate(existing, snapshot)

    def decode(self, token: Optional[str]) -> SessionCredential:
        """Verify signature and expiry and rebuild the credential.

        Raises:
            InvalidSessionCredential: Missing, tampered, expired or malformed
        """
        if not token:
            raise InvalidSessionCredential("no session token")
        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError as e:
            raise InvalidSessionCredential(str(e)) from e

        state = parse_state(claims.get("subscription_state"))
        if not claims.get("sub") or not claims.get("email") or state is None:
            raise InvalidSessionCredential("session token is missing required claims")

        snapshot = SessionSnapshot(
            account_id=claims["sub"],
            email=claims["email"],
            name=claims.get("name"),
            subscription_state=state,
            has_lifetime_access=bool(claims.get("has_lifetime_access", False)),
            onboarding_completed=bool(claims.get("onboarding_completed", False)),
        )
        issued_at = _from_epoch(claims.get("iat"))
        return SessionCredential(
            token=token,
            snapshot=snapshot,
            issued_at=issued_at,
            refreshed_at=_from_epoch(claims.get("rat", claims.get("iat"))),
            expires_at=_from_epoch(claims.get("exp")),
            max_age_seconds=int(self.max_age.total_seconds()),
        )

    def needs_refresh(self, credential: SessionCredential, now: Optional[datetime] = None) -> bool:
        """True once the embedded snapshot is older than the refresh interval."""
        current = now or self._now()
        return current - credential.refreshed_at >= self.refresh_interval


# ── Cookie transport ─────────────────────────────────────────────────────────

def set_session_cookie(response: Response, credential: SessionCredential) -> None:
    """Attach the credential as an HttpOnly, SameSite=Lax, site-wide cookie."""
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=credential.token,
        max_age=credential.max_age_seconds,
        path="/",
        httponly=True,
        secure=is_production_env(),
        samesite="lax",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=is_production_env(),
        samesite="lax",
    )


_broker: Optional[SessionTokenBroker] = None
_broker_lock = threading.Lock()


def get_session_broker() -> SessionTokenBroker:
    """Get the process-wide broker (lazy init-once).

    Raises:
        ValueError: If SESSION_SECRET is not configured
    """
    global _broker
    if _broker is None:
        with _broker_lock:
            if _broker is None:
                _broker = SessionTokenBroker(
                    get_session_secret(),
                    max_age_seconds=get_session_max_age_seconds(),
                    refresh_interval_seconds=get_session_refresh_interval_seconds(),
                )
    return _broker
