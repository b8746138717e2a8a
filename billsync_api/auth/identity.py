"""Identity-provider sign-in assertions.

The login provider is an external collaborator: after it authenticates the
user it hands the browser a short-lived HS256 JWT whose ``sub`` is the stable
user id and whose ``email`` is verified. This module only checks that
assertion and turns it into a principal.
"""

from dataclasses import dataclass
from typing import Any, Optional

from jose import JWTError, jwt

from billsync_api.config.env import get_identity_token_audience, get_identity_token_secret

ALGORITHMS = ["HS256"]


class IdentityAssertionInvalid(Exception):
    """The sign-in assertion failed verification."""


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    name: Optional[str] = None


def verify_identity_assertion(token: str) -> Principal:
    """Verify signature, expiry and (optionally) audience.

    Raises:
        IdentityAssertionInvalid: Verification failed or claims are missing
        ValueError: IDENTITY_TOKEN_SECRET is not configured
    """
    secret = get_identity_token_secret()
    audience = get_identity_token_audience()
    options: dict[str, Any] = {"verify_aud": audience is not None}
    try:
        claims = jwt.decode(token, secret, algorithms=ALGORITHMS, audience=audience, options=options)
    except JWTError as e:
        raise IdentityAssertionInvalid(str(e)) from e

    subject = claims.get("sub")
    email = claims.get("email")
    if not subject or not email:
        raise IdentityAssertionInvalid("assertion is missing sub or email")
    return Principal(id=str(subject), email=str(email).strip().lower(), name=claims.get("name"))
