"""Account row helpers shared by the auth, checkout and user routers.

Every write here is a single conditional statement so concurrent requests for
the same account never need a lock:
- account creation tolerates a concurrent insert of the same id
- customer linking only fills an empty ``customer_id``
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billsync_api.auth.identity import Principal
from billsync_api.billing.errors import AccountNotFound
from billsync_api.billing.stripe_client import StripeClient
from billsync_api.db.models import Account

logger = logging.getLogger(__name__)


def load_account(db: Session, account_id: str) -> Account:
    """Fresh read of the account row.

    Raises:
        AccountNotFound: No row for ``account_id``
    """
    account = db.get(Account, account_id, populate_existing=True)
    if account is None:
        raise AccountNotFound(account_id=account_id)
    return account


def get_or_create_account(db: Session, principal: Principal) -> tuple[Account, bool]:
    """Return (account, created) for an identity-provider principal."""
    account = db.get(Account, principal.id)
    if account is not None:
        return account, False

    account = Account(id=principal.id, email=principal.email, name=principal.name)
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first sign-in inserted the same id
        db.rollback()
        return load_account(db, principal.id), False

    logger.info(
        "ACCOUNT_CREATED",
        extra={"event": "account.created", "account_id": principal.id},
    )
    return account, True


async def ensure_customer(db: Session, stripe_client: StripeClient, account: Account) -> str:
    """Return the account's provider customer id, creating it on first use.

    The link is written with ``WHERE customer_id IS NULL``: when two requests
    race, the first link wins and both return the stored value.

    Raises:
        ProviderLookupFailed: Provider unreachable
        IntegrityError: The customer is already linked to a different account
    """
    if account.customer_id:
        return account.customer_id

    customer_id = await stripe_client.find_or_create_customer(
        account_id=account.id,
        email=account.email,
        name=account.name,
    )
    try:
        db.execute(
            update(Account)
            .where(Account.id == account.id, Account.customer_id.is_(None))
            .values(customer_id=customer_id, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.error(
            "CUSTOMER_ALREADY_LINKED",
            extra={"event": "account.customer_conflict", "account_id": account.id},
        )
        raise

    stored = load_account(db, account.id).customer_id
    logger.info(
        "CUSTOMER_LINKED",
        extra={
            "event": "account.customer_linked",
            "account_id": account.id,
            "customer_id": stored,
            "won_race": stored == customer_id,
        },
    )
    return stored


def mark_onboarding_completed(db: Session, account_id: str) -> tuple[Account, bool]:
    """Set the onboarding flag; returns (account, whether this call set it)."""
    result = db.execute(
        update(Account)
        .where(Account.id == account_id, Account.onboarding_completed.is_(False))
        .values(onboarding_completed=True, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return load_account(db, account_id), result.rowcount == 1


def delete_account(db: Session, account_id: str) -> None:
    """Delete the row. Raises AccountNotFound when nothing was deleted."""
    result = db.execute(delete(Account).where(Account.id == account_id))
    db.commit()
    if result.rowcount == 0:
        raise AccountNotFound(account_id=account_id)
    logger.info(
        "ACCOUNT_DELETED",
        extra={"event": "account.deleted", "account_id": account_id},
    )
