"""Provider status → canonical SubscriptionState.

The mapping is total: anything the provider sends that is not in the table
(including statuses introduced after this was written) becomes ``new``, which
only ever under-grants access.
"""

from enum import Enum
from typing import Optional


class SubscriptionState(str, Enum):
    """Canonical subscription state stored on accounts and in credentials."""

    NEW = "new"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNPAID = "unpaid"
    EXPIRED = "expired"


_PROVIDER_STATUS_MAP: dict[str, SubscriptionState] = {
    "active": SubscriptionState.ACTIVE,
    "trialing": SubscriptionState.TRIALING,
    "past_due": SubscriptionState.PAST_DUE,
    "canceled": SubscriptionState.CANCELED,
    "unpaid": SubscriptionState.PAST_DUE,
    "incomplete": SubscriptionState.INCOMPLETE,
    "incomplete_expired": SubscriptionState.INCOMPLETE_EXPIRED,
    # Suspended and terminated are gated the same way downstream.
    "paused": SubscriptionState.EXPIRED,
}

ENTITLED_STATES: frozenset[SubscriptionState] = frozenset({
    SubscriptionState.ACTIVE,
    SubscriptionState.TRIALING,
    SubscriptionState.NEW,
})

LAPSED_STATES: frozenset[SubscriptionState] = frozenset(SubscriptionState) - ENTITLED_STATES


def map_provider_status(raw_status: Optional[str]) -> SubscriptionState:
    """Translate a raw provider subscription status into a canonical state."""
    if not isinstance(raw_status, str):
        return SubscriptionState.NEW
    return _PROVIDER_STATUS_MAP.get(raw_status, SubscriptionState.NEW)


def parse_state(value: Optional[str]) -> Optional[SubscriptionState]:
    """Parse a stored/embedded canonical value; None when unrecognised."""
    if value is None:
        return None
    try:
        return SubscriptionState(value)
    except ValueError:
        return None


def is_entitled(state: Optional[SubscriptionState]) -> bool:
    return state in ENTITLED_STATES
