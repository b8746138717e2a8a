"""Reconciliation engine: the single writer of canonical subscription state.

Both write paths (Stripe webhooks and the checkout-redirect callback) call
``ReconciliationEngine.reconcile``. Safety comes from two storage primitives,
never from locking the two paths against each other:

  1. One atomic ``UPDATE accounts ... RETURNING`` per transition. The SET
     clause reads the old row (previous state, first activation marker), so no
     read-modify-write round trip exists for a concurrent writer to interleave
     with. The WHERE clause only matches when the row's stored provider
     timestamp is not newer than the transition's, so the latest provider
     timestamp wins whatever the arrival order.
  2. The inbound_events UNIQUE constraint. The ledger row is inserted in the
     same transaction as the account update; the losing delivery of a
     duplicate rolls back and fires no side effects.

A lapse (cancel, past_due, ...) only applies to the subscription the account
holds, so ending an old or vetoed subscription never locks out an account
that is active on another one. The first entitled write of each subscription
goes through FraudGuard, whichever path reports it first.

Lifecycle signals are returned to the caller for post-commit dispatch.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import TIMESTAMP, and_, case, func, literal, or_, select, update
from sqlalchemy.orm import Session

from billsync_api.analytics.sinks import LifecycleSignal, SignalKind
from billsync_api.billing import event_ledger
from billsync_api.billing.errors import BillingError, DuplicateEvent, FraudRejected
from billsync_api.billing.fraud_guard import FraudGuard
from billsync_api.billing.status_mapper import (
    ENTITLED_STATES,
    LAPSED_STATES,
    SubscriptionState,
    map_provider_status,
)
from billsync_api.context import account_id_var
from billsync_api.db.models import Account

logger = logging.getLogger(__name__)

# States a subscription can first entitle an account with
SCREENED_STATES: frozenset[SubscriptionState] = ENTITLED_STATES - {SubscriptionState.NEW}


class TransitionSource(str, Enum):
    WEBHOOK = "webhook"
    CHECKOUT_REDIRECT = "checkout-redirect"
    USER_ACTION = "user-action"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"        # state changed
    UNCHANGED = "unchanged"    # same state re-applied; references may have been refreshed
    STALE = "stale"            # an equal-or-newer provider timestamp is already stored
    DUPLICATE = "duplicate"    # ledger says the event was already handled
    NOT_FOUND = "not_found"    # no account for the reference; event still recorded
    REJECTED = "rejected"      # FraudGuard veto; provider subscription canceled
    SUPERSEDED = "superseded"  # lapse of a subscription the account no longer holds


@dataclass(frozen=True)
class AccountRef:
    """Key for the atomic update: internal account id OR provider customer id."""

    account_id: Optional[str] = None
    customer_id: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.account_id is None) == (self.customer_id is None):
            raise ValueError("AccountRef needs exactly one of account_id / customer_id")

    @classmethod
    def by_account(cls, account_id: str) -> "AccountRef":
        return cls(account_id=account_id)

    @classmethod
    def by_customer(cls, customer_id: str) -> "AccountRef":
        return cls(customer_id=customer_id)

    def where_clause(self):
        if self.account_id is not None:
            return Account.id == self.account_id
        return Account.customer_id == self.customer_id

    def __str__(self) -> str:
        return self.account_id or f"customer:{self.customer_id}"


@dataclass(frozen=True)
class Transition:
    """A provider-reported subscription condition to apply to one account.

    ``observed_at`` is the provider's own timestamp for the condition (webhook
    ``created``), or the lookup time for synchronous provider reads.
    """

    provider_status: Optional[str]
    source: TransitionSource
    observed_at: datetime
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    payment_fingerprint: Optional[str] = None
    ledger_key: Optional[str] = None
    event_type: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    checkout_completion: bool = False
    cancel_reason: Optional[str] = None
    signal_properties: dict[str, Any] = field(default_factory=dict)

    @property
    def target_state(self) -> SubscriptionState:
        return map_provider_status(self.provider_status)

    @property
    def runs_fraud_guard(self) -> bool:
        """Checkout completions always; other provider reports when they entitle."""
        if self.checkout_completion or self.source == TransitionSource.CHECKOUT_REDIRECT:
            return True
        return self.source == TransitionSource.WEBHOOK and self.target_state in SCREENED_STATES


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    account_id: Optional[str] = None
    state: Optional[SubscriptionState] = None
    previous_state: Optional[SubscriptionState] = None
    signals: list[LifecycleSignal] = field(default_factory=list)
    error: Optional[BillingError] = None

    @property
    def changed(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReconciliationEngine:
    """Applies transitions atomically and idempotently.

    Args:
        db: Request-scoped session. The engine commits or rolls it back.
        fraud_guard: Screens transitions that would first entitle an account.
    """

    def __init__(self, db: Session, fraud_guard: FraudGuard):
        self.db = db
        self.fraud_guard = fraud_guard

    async def reconcile(self, ref: AccountRef, transition: Transition) -> ReconcileResult:
        """Apply ``transition`` to the account behind ``ref``.

        Raises:
            ProviderLookupFailed: Compensating cancellation failed; nothing was
                recorded so the provider redelivers.
            SQLAlchemyError: Storage failure; the transaction is rolled back.
        """
        key = transition.ledger_key
        if key and event_ledger.has_processed(self.db, key):
            logger.info(
                "RECONCILE_DUPLICATE",
                extra={"event": "reconcile.duplicate", "ledger_key": key, "ref": str(ref)},
            )
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE)

        try:
            cleared = False
            if transition.runs_fraud_guard:
                rejected, fingerprint, cleared = await self._screen(ref, transition)
                if rejected is not None:
                    return rejected
                if fingerprint and not transition.payment_fingerprint:
                    transition = replace(transition, payment_fingerprint=fingerprint)
            return self._apply(ref, transition, cleared=cleared)
        except Exception:
            self.db.rollback()
            raise

    # ── Fraud gate ──────────────────────────────────────────────────────────

    async def _screen(
        self, ref: AccountRef, transition: Transition
    ) -> tuple[Optional[ReconcileResult], Optional[str], bool]:
        """Run FraudGuard unless the subscription already passed for this account.

        Returns (REJECTED result or None, fingerprint used, whether the
        subscription is now cleared). A report without a fingerprint runs the
        e-mail check but does not clear the subscription, so checkout
        completion still checks the instrument.
        """
        account = self.db.execute(
            select(Account)
            .where(ref.where_clause())
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if account is None:
            # _apply reports NOT_FOUND
            return None, None, False

        subscription_id = transition.subscription_id
        if subscription_id and account.fraud_cleared_subscription_id == subscription_id:
            return None, None, False
        if subscription_id and account.vetoed_subscription_id == subscription_id:
            # Already compensated
            return self._finish_rejected(ref, transition, account, None), None, False

        fingerprint = transition.payment_fingerprint
        if fingerprint is None and subscription_id and not transition.checkout_completion:
            fingerprint = await self.fraud_guard.fingerprint_for(subscription_id)

        try:
            self.fraud_guard.evaluate(account, fingerprint)
        except FraudRejected as rejection:
            await self.fraud_guard.compensate(subscription_id, reason=rejection.code)
            if subscription_id:
                self.db.execute(
                    update(Account)
                    .where(Account.id == account.id)
                    .values(vetoed_subscription_id=subscription_id, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
            return self._finish_rejected(ref, transition, account, rejection), fingerprint, False

        cleared = bool(subscription_id) and (fingerprint is not None or transition.checkout_completion)
        return None, fingerprint, cleared

    def _finish_rejected(
        self,
        ref: AccountRef,
        transition: Transition,
        account: Account,
        rejection: Optional[FraudRejected],
    ) -> ReconcileResult:
        if not self._record(transition, ref):
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE, account_id=account.id)
        self.db.commit()
        logger.warning(
            "RECONCILE_REJECTED",
            extra={
                "event": "reconcile.rejected",
                "account_id": account.id,
                "reason": rejection.code if rejection else "previously_vetoed",
                "subscription_id": transition.subscription_id,
                "source": transition.source.value,
                "ledger_key": transition.ledger_key,
            },
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.REJECTED,
            account_id=account.id,
            state=SubscriptionState(account.subscription_state),
            error=rejection,
        )

    # ── Atomic apply ────────────────────────────────────────────────────────

    @staticmethod
    def _holds(subscription_id: str):
        """Row holds ``subscription_id``, or holds none and never vetoed it."""
        return or_(
            Account.subscription_id == subscription_id,
            and_(
                Account.subscription_id.is_(None),
                or_(
                    Account.vetoed_subscription_id.is_(None),
                    Account.vetoed_subscription_id != subscription_id,
                ),
            ),
        )

    def _apply(self, ref: AccountRef, transition: Transition, cleared: bool = False) -> ReconcileResult:
        target = transition.target_state
        observed_at = _as_utc(transition.observed_at)
        now = datetime.now(timezone.utc)
        write_ref = transition.ledger_key or f"{transition.source.value}:{uuid.uuid4().hex}"

        values: dict[str, Any] = {
            "previous_subscription_state": Account.subscription_state,
            "subscription_state": target.value,
            "status_observed_at": observed_at,
            "updated_at": now,
        }
        if target == SubscriptionState.CANCELED:
            values["subscription_id"] = None
            values["price_id"] = None
        else:
            if transition.subscription_id:
                values["subscription_id"] = transition.subscription_id
            if transition.price_id:
                values["price_id"] = transition.price_id
        if transition.payment_fingerprint:
            values["payment_fingerprint"] = transition.payment_fingerprint
        if cleared:
            values["fraud_cleared_subscription_id"] = transition.subscription_id
        if transition.customer_id and ref.account_id is not None:
            values["customer_id"] = func.coalesce(Account.customer_id, transition.customer_id)
        if target == SubscriptionState.ACTIVE:
            values["first_activated_by"] = case(
                (Account.first_activated_by.is_(None), literal(write_ref)),
                else_=Account.first_activated_by,
            )
            values["subscribed_at"] = func.coalesce(
                Account.subscribed_at, literal(now, TIMESTAMP(timezone=True))
            )

        stmt = (
            update(Account)
            .where(ref.where_clause())
            .where(
                or_(
                    Account.status_observed_at.is_(None),
                    Account.status_observed_at <= observed_at,
                )
            )
            .values(**values)
            .returning(
                Account.id,
                Account.previous_subscription_state,
                Account.first_activated_by,
            )
            .execution_options(synchronize_session=False)
        )
        if target in LAPSED_STATES and transition.subscription_id:
            stmt = stmt.where(self._holds(transition.subscription_id))
        row = self.db.execute(stmt).first()

        if row is None:
            return self._finish_unmatched(ref, transition)

        account_id, previous_raw, first_activated_by = row
        account_id_var.set(account_id)
        previous = SubscriptionState(previous_raw) if previous_raw else None

        if not self._record(transition, ref):
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE, account_id=account_id)
        self.db.commit()

        signals = self._signals_for(account_id, transition, previous, first_activated_by == write_ref)
        outcome = ReconcileOutcome.APPLIED if previous != target else ReconcileOutcome.UNCHANGED

        logger.info(
            "RECONCILE_APPLIED" if outcome == ReconcileOutcome.APPLIED else "RECONCILE_UNCHANGED",
            extra={
                "event": f"reconcile.{outcome.value}",
                "account_id": account_id,
                "source": transition.source.value,
                "event_type": transition.event_type,
                "ledger_key": transition.ledger_key,
                "provider_status": transition.provider_status,
                "state": target.value,
                "previous_state": previous.value if previous else None,
                "signals": [s.kind.value for s in signals],
            },
        )
        return ReconcileResult(
            outcome=outcome,
            account_id=account_id,
            state=target,
            previous_state=previous,
            signals=signals,
        )

    def _finish_unmatched(self, ref: AccountRef, transition: Transition) -> ReconcileResult:
        """No row updated: the account is missing, moved on, or the write is stale."""
        existing = self.db.execute(
            select(
                Account.id,
                Account.subscription_state,
                Account.subscription_id,
                Account.vetoed_subscription_id,
            ).where(ref.where_clause())
        ).first()

        if not self._record(transition, ref):
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE)
        self.db.commit()

        if existing is None:
            logger.warning(
                "RECONCILE_ACCOUNT_NOT_FOUND",
                extra={
                    "event": "reconcile.account_not_found",
                    "ref": str(ref),
                    "source": transition.source.value,
                    "event_type": transition.event_type,
                    "ledger_key": transition.ledger_key,
                    "provider_status": transition.provider_status,
                },
            )
            return ReconcileResult(outcome=ReconcileOutcome.NOT_FOUND)

        account_id, state, held, vetoed = existing
        subscription_id = transition.subscription_id
        if (
            transition.target_state in LAPSED_STATES
            and subscription_id
            and (held != subscription_id if held is not None else vetoed == subscription_id)
        ):
            logger.info(
                "RECONCILE_SUPERSEDED",
                extra={
                    "event": "reconcile.superseded",
                    "account_id": account_id,
                    "source": transition.source.value,
                    "event_type": transition.event_type,
                    "ledger_key": transition.ledger_key,
                    "provider_status": transition.provider_status,
                    "subscription_id": subscription_id,
                    "held_subscription_id": held,
                },
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.SUPERSEDED,
                account_id=account_id,
                state=SubscriptionState(state),
            )

        logger.info(
            "RECONCILE_STALE",
            extra={
                "event": "reconcile.stale",
                "account_id": account_id,
                "source": transition.source.value,
                "event_type": transition.event_type,
                "ledger_key": transition.ledger_key,
                "provider_status": transition.provider_status,
                "observed_at": _as_utc(transition.observed_at).isoformat(),
            },
        )
        return ReconcileResult(
            outcome=ReconcileOutcome.STALE,
            account_id=account_id,
            state=SubscriptionState(state),
        )

    def _record(self, transition: Transition, ref: AccountRef) -> bool:
        """Insert the ledger row; False (after rollback) when another delivery won."""
        if not transition.ledger_key:
            return True
        try:
            event_ledger.record_processed(
                self.db,
                transition.ledger_key,
                transition.event_type or transition.source.value,
                related_subscription_id=transition.subscription_id,
                payload=transition.payload,
            )
        except DuplicateEvent:
            self.db.rollback()
            logger.info(
                "RECONCILE_LOST_LEDGER_RACE",
                extra={
                    "event": "reconcile.duplicate",
                    "ledger_key": transition.ledger_key,
                    "ref": str(ref),
                },
            )
            return False
        return True

    @staticmethod
    def _signals_for(
        account_id: str,
        transition: Transition,
        previous: Optional[SubscriptionState],
        first_activation: bool,
    ) -> list[LifecycleSignal]:
        target = transition.target_state
        base = {
            "source": transition.source.value,
            "subscription_id": transition.subscription_id,
        }
        if target == SubscriptionState.ACTIVE and first_activation and previous != target:
            props = {**base, "price_id": transition.price_id, **transition.signal_properties}
            return [LifecycleSignal(SignalKind.SUBSCRIBE, account_id, props)]
        if target == SubscriptionState.CANCELED and previous != target:
            props = {
                **base,
                "previous_state": previous.value if previous else None,
                "reason": transition.cancel_reason or "unknown",
            }
            return [LifecycleSignal(SignalKind.CANCEL, account_id, props)]
        return []
