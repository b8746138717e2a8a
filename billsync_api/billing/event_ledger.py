"""Inbound event ledger: write-after-success idempotency for provider events.

Design:
  has_processed()    advisory SELECT, lets duplicates exit before any work
  record_processed() INSERT ON CONFLICT (external_event_id) DO NOTHING RETURNING id
                       → row returned : this caller owns the event
                       → no row       : another delivery already recorded it → DuplicateEvent

The ledger row is written at the END of processing, inside the caller's
transaction. A crash mid-processing therefore leaves no row and the provider's
redelivery processes the event again. The UNIQUE constraint on
external_event_id, not the advisory check, decides the winner under concurrent
delivery.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, TIMESTAMP, bindparam, text
from sqlalchemy.orm import Session

from billsync_api.billing.errors import DuplicateEvent

logger = logging.getLogger(__name__)


_EXISTS_SQL = text("""
    SELECT 1 FROM inbound_events WHERE external_event_id = :external_event_id
""")

_INSERT_SQL = text("""
    INSERT INTO inbound_events
        (external_event_id, event_type, related_subscription_id, payload, processed_at)
    VALUES
        (:external_event_id, :event_type, :related_subscription_id, :payload, :now)
    ON CONFLICT (external_event_id) DO NOTHING
    RETURNING id
""").bindparams(
    bindparam("payload", type_=JSON),
    bindparam("now", type_=TIMESTAMP(timezone=True)),
)


def has_processed(db: Session, external_event_id: str) -> bool:
    """Return True if the event id is already in the ledger (advisory fast path)."""
    row = db.execute(_EXISTS_SQL, {"external_event_id": external_event_id}).first()
    return row is not None


def record_processed(
    db: Session,
    external_event_id: str,
    event_type: str,
    related_subscription_id: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
) -> int:
    """Append the event to the ledger inside the caller's transaction.

    Does not commit: the caller commits the ledger row together with the state
    change it describes.

    Returns:
        The new ledger row id.

    Raises:
        DuplicateEvent: The event id is already recorded (lost the race).
    """
    result = db.execute(_INSERT_SQL, {
        "external_event_id": external_event_id,
        "event_type": event_type,
        "related_subscription_id": related_subscription_id,
        "payload": payload,
        "now": datetime.now(timezone.utc),
    })
    row = result.fetchone()

    if row is None:
        logger.info(
            "LEDGER_DUPLICATE",
            extra={
                "event": "ledger.duplicate",
                "external_event_id": external_event_id,
                "event_type": event_type,
            },
        )
        raise DuplicateEvent(external_event_id)

    logger.debug(
        "LEDGER_RECORDED",
        extra={
            "event": "ledger.recorded",
            "external_event_id": external_event_id,
            "event_type": event_type,
        },
    )
    return row[0]
