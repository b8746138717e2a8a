"""SQLAlchemy ORM models for Billsync."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BIGINT, BOOLEAN, JSON, TEXT, TIMESTAMP, Index, Integer, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
_BIGINT_PK = BIGINT().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Account(Base):
    """Account model - one per end user, authoritative subscription state.

    Rows are created only by sign-in. Billing paths update them through a single
    atomic UPDATE in ReconciliationEngine, never through ORM read-modify-write.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Provider references
    customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    price_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Canonical state (SubscriptionState values only)
    subscription_state: Mapped[str] = mapped_column(TEXT, nullable=False, default="new")
    previous_subscription_state: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Provider timestamp of the transition that produced subscription_state
    status_observed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Ledger key of the transition that first activated the account
    first_activated_by: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscribed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    has_lifetime_access: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    payment_fingerprint: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    # Last subscription FraudGuard passed / vetoed for this account
    fraud_cleared_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    vetoed_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    onboarding_completed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_accounts_customer_id"),
        Index("idx_accounts_payment_fingerprint", "payment_fingerprint"),
        Index("idx_accounts_email", "email"),
    )


class InboundEvent(Base):
    """InboundEvent model - append-only ledger of fully processed provider events.

    The unique constraint on external_event_id is the idempotency primitive.
    """

    __tablename__ = "inbound_events"

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    external_event_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    related_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_inbound_events_external_event_id"),
        Index("idx_inbound_events_subscription", "related_subscription_id"),
    )
