"""Log sanitizer for secrets, credentials and customer PII.

Strings pass through a size gate before any regex runs:
 1. longer than MAX_STR_LOG       -> replaced by a length + sha256 marker
 2. longer than MAX_STR_FOR_REGEX -> prefix check only
 3. otherwise                     -> full pattern replacement

Provider secrets (sk_/rk_/whsec_ keys), bearer credentials and session
cookies never reach a log line verbatim.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

# Dict keys whose values are always redacted (compared lower-cased)
_SENSITIVE_KEYS: frozenset[str] = frozenset({
    "authorization", "cookie", "set-cookie", "token", "id_token",
    "session_token", "secret", "api_key", "signature", "stripe-signature",
    "email", "customer_email", "name", "phone", "card", "fingerprint",
    "payment_fingerprint", "client_secret", "password",
})

_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"Bearer \S+"),
    re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"billsync\.session-token=[^;\s]+"),
    re.compile(r"\bt=\d+,v1=[0-9a-f]+"),
]

_BEARER_PREFIX = "Bearer "


def payload_hash_bytes(raw: bytes) -> str:
    """Return sha256 hex digest of raw bytes."""
    return hashlib.sha256(raw).hexdigest()


def mask_email(email: str | None) -> str | None:
    """Keep only the domain of an address (``***@example.com``)."""
    if not email or "@" not in email:
        return None
    return "***@" + email.rsplit("@", 1)[1].lower()


def sanitize_str(s: str) -> str:
    """Sanitize a string value according to the three-tier size gate."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)

    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        if s.startswith(_BEARER_PREFIX):
            return "[REDACTED]"
        return s

    result = s
    for pattern in _PATTERNS:
        result = pattern.sub("[REDACTED]", result)
    return result


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log extra value.

    Dicts have sensitive keys redacted, lists and strings are walked,
    everything else is returned unchanged. Depth is capped at MAX_DEPTH.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        result: dict[str, Any] = {}
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_obj(value, depth + 1)
        return result

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string.

    Locals are never captured, they may hold secrets or card data.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return sanitize_str("".join(te.format()))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
