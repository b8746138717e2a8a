"""Checkout abuse checks, run before a subscription first entitles an account.

Checkout completion always screens. Any other provider report that would put
an account into an entitled state screens too, until one screening has
cleared that subscription for the account.

Checks short-circuit, first match wins:
  1. e-mail domain (or a parent domain) on the disposable denylist
  2. payment fingerprint already bound to a DIFFERENT account that is active

A veto is paired with a compensating cancellation of the subscription the
provider just created, so a rejected checkout never leaves a paid
subscription behind.
"""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from billsync_api.billing.errors import (
    DisposableEmailRejected,
    DuplicateInstrumentRejected,
    ProviderLookupFailed,
)
from billsync_api.billing.status_mapper import SubscriptionState
from billsync_api.config.env import get_extra_disposable_domains
from billsync_api.db.models import Account
from billsync_api.utils.sanitize import mask_email

if TYPE_CHECKING:
    from billsync_api.billing.stripe_client import StripeClient

logger = logging.getLogger(__name__)

DISPOSABLE_EMAIL_DOMAINS: frozenset[str] = frozenset({
    "mailinator.com",
    "tempmail.com",
    "10minutemail.com",
    "guerrillamail.com",
    "yopmail.com",
    "trashmail.com",
    "sharklasers.com",
    "getnada.com",
    "throwawaymail.com",
    "maildrop.cc",
})


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    return email.rsplit("@", 1)[1].strip().lower().rstrip(".")


def is_disposable_email(email: Optional[str], extra_domains: Optional[set[str]] = None) -> bool:
    """True if the address belongs to a disposable mail provider.

    Subdomains match too: ``x@eu.mailinator.com`` is rejected.
    """
    domain = email_domain(email)
    if not domain:
        return False
    denylist = DISPOSABLE_EMAIL_DOMAINS | (
        extra_domains if extra_domains is not None else get_extra_disposable_domains()
    )
    labels = domain.split(".")
    return any(".".join(labels[i:]) in denylist for i in range(len(labels) - 1))


class FraudGuard:
    """Evaluates a completed checkout and cancels vetoed subscriptions."""

    def __init__(self, db: Session, provider: "StripeClient"):
        self.db = db
        self.provider = provider

    def evaluate(self, account: Account, payment_fingerprint: Optional[str]) -> None:
        """Raise if the checkout must not activate ``account``.

        Raises:
            DisposableEmailRejected: E-mail domain is disposable
            DuplicateInstrumentRejected: Instrument backs another active account
        """
        if is_disposable_email(account.email):
            logger.warning(
                "FRAUD_DISPOSABLE_EMAIL",
                extra={
                    "event": "fraud.disposable_email",
                    "account_id": account.id,
                    "email_domain": mask_email(account.email),
                },
            )
            raise DisposableEmailRejected(account_id=account.id)

        if payment_fingerprint:
            other = self.db.execute(
                select(Account.id)
                .where(Account.payment_fingerprint == payment_fingerprint)
                .where(Account.id != account.id)
                .where(Account.subscription_state == SubscriptionState.ACTIVE.value)
                .limit(1)
            ).first()
            if other is not None:
                logger.warning(
                    "FRAUD_DUPLICATE_INSTRUMENT",
                    extra={
                        "event": "fraud.duplicate_instrument",
                        "account_id": account.id,
                        "conflicting_account_id": other[0],
                    },
                )
                raise DuplicateInstrumentRejected(account_id=account.id)

    async def fingerprint_for(self, subscription_id: str) -> Optional[str]:
        """Card fingerprint behind a subscription; None if the lookup fails."""
        try:
            snapshot = await self.provider.retrieve_subscription(subscription_id)
        except ProviderLookupFailed as e:
            logger.warning(
                "FRAUD_FINGERPRINT_LOOKUP_FAILED",
                extra={
                    "event": "fraud.fingerprint_lookup_failed",
                    "subscription_id": subscription_id,
                    "operation": e.operation,
                },
            )
            return None
        return snapshot.payment_fingerprint

    async def compensate(self, subscription_id: Optional[str], *, reason: str) -> None:
        """Cancel the provider subscription created by a vetoed checkout.

        Raises:
            ProviderLookupFailed: Cancellation failed; the caller must not
                record the event so the provider redelivers it.
        """
        if not subscription_id:
            return
        await self.provider.cancel_subscription(subscription_id)
        logger.info(
            "FRAUD_COMPENSATING_CANCEL",
            extra={
                "event": "fraud.compensating_cancel",
                "subscription_id": subscription_id,
                "reason": reason,
            },
        )
