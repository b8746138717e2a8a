"""Request-time access classification.

``decide`` is a pure function of (session snapshot | None, path). It never
reads the database and holds no transition logic: it only classifies the
snapshot the credential carries.

Order of evaluation:
  1. exempt path or asset     → allow (for every credential state, including none)
  2. no credential            → allow public/static, else sign-in redirect
  3. lifetime access          → allow; public page → app redirect
  4. active | trialing | new  → allow; public page → app redirect
  5. any other state          → billing-recovery redirect

The exempt list is explicit. A lapsed user must always reach the pages and
endpoints that let them fix their billing, and the webhook/auth endpoints
that update state must never be blocked by the gate that depends on them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

from billsync_api.auth.session_token import SessionSnapshot
from billsync_api.billing.status_mapper import ENTITLED_STATES

SIGN_IN_PATH = "/login"
APP_HOME_PATH = "/home"
BILLING_RECOVERY_PATH = "/stripe/subscription-expired"

# Never gated. Entries match the path itself and everything below it.
EXEMPT_PATHS: tuple[str, ...] = (
    "/api/auth",
    "/api/webhook/stripe",
    "/api/user/subscription-status",
    "/api/user/delete",
    "/api/stripe/post-checkout",
    "/api/stripe/create-checkout-session",
    "/api/stripe/create-portal",
    "/api/subscription/resume",
    "/stripe/processing-payment",
    "/stripe/subscription-expired",
    "/stripe/trial-offer",
    "/error",
    "/health",
    "/readyz",
)

# Marketing pages: open to anonymous visitors, entitled users go to the app
PUBLIC_PATHS: frozenset[str] = frozenset({
    "/",
    "/pricing",
    "/blog",
    "/contact",
    "/login",
    "/signup",
    "/privacy",
    "/terms",
})

# Anonymous-readable assets
STATIC_PREFIXES: tuple[str, ...] = (
    "/static",
    "/favicon.ico",
    "/robots.txt",
)


class GateAction(str, Enum):
    ALLOW = "allow"
    REDIRECT_SIGN_IN = "redirect_sign_in"
    REDIRECT_APP = "redirect_app"
    REDIRECT_BILLING = "redirect_billing"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    location: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action == GateAction.ALLOW


ALLOW = GateDecision(GateAction.ALLOW)


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def normalize_path(path: str) -> str:
    if not path:
        return "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def is_exempt(path: str) -> bool:
    return _matches(normalize_path(path), EXEMPT_PATHS)


def is_public(path: str) -> bool:
    path = normalize_path(path)
    return path in PUBLIC_PATHS or _matches(path, STATIC_PREFIXES)


def _marketing_page(path: str) -> bool:
    return normalize_path(path) in PUBLIC_PATHS


def decide(snapshot: Optional[SessionSnapshot], path: str) -> GateDecision:
    """Classify a request. Never raises, never touches storage."""
    if is_exempt(path) or _matches(normalize_path(path), STATIC_PREFIXES):
        return ALLOW

    if snapshot is None:
        if is_public(path):
            return ALLOW
        return GateDecision(
            GateAction.REDIRECT_SIGN_IN,
            f"{SIGN_IN_PATH}?callbackUrl={quote(normalize_path(path), safe='')}",
        )

    if snapshot.has_lifetime_access or snapshot.subscription_state in ENTITLED_STATES:
        if _marketing_page(path):
            return GateDecision(GateAction.REDIRECT_APP, APP_HOME_PATH)
        return ALLOW

    return GateDecision(GateAction.REDIRECT_BILLING, BILLING_RECOVERY_PATH)
