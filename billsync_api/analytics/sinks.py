"""Lifecycle signal sinks (fire-and-forget product analytics).

Signals are produced by reconciliation/sign-in AFTER their transaction
commits and delivered from a background task. A sink failure is logged and
dropped here: it can never roll back or block the state change that caused it.

Sink selection (get_lifecycle_sink):
  ANALYTICS_API_KEY set → HttpLifecycleSink (PostHog-compatible /capture/)
  otherwise             → LoggingLifecycleSink

Test helpers:
  InMemoryLifecycleSink → records signals in a list
  FailingLifecycleSink  → always raises RuntimeError
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

import httpx

from billsync_api.config.env import get_analytics_api_key, get_analytics_host

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    SIGN_UP = "sign_up"
    SUBSCRIBE = "subscribe"
    CANCEL = "cancel"
    ONBOARDING_COMPLETE = "onboarding_complete"


@dataclass(frozen=True)
class LifecycleSignal:
    """One lifecycle event about one account."""

    kind: SignalKind
    account_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Protocol ──────────────────────────────────────────────────────────────────

@runtime_checkable
class LifecycleSink(Protocol):
    """Minimal interface for all lifecycle sinks."""

    async def emit(self, signal: LifecycleSignal) -> None:
        """Deliver one signal.

        Raises:
            Exception: Any delivery failure; dispatch_signals logs and drops it.
        """
        ...


# ── Sinks ─────────────────────────────────────────────────────────────────────

class LoggingLifecycleSink:
    """Write signals to the structured log only."""

    async def emit(self, signal: LifecycleSignal) -> None:
        logger.info(
            "LIFECYCLE_SIGNAL",
            extra={
                "event": f"lifecycle.{signal.kind.value}",
                "account_id": signal.account_id,
                "properties": signal.properties,
            },
        )


class HttpLifecycleSink:
    """POST signals to a PostHog-compatible capture endpoint."""

    def __init__(self, api_key: str, host: str, timeout: float = 5.0):
        self.api_key = api_key
        self.capture_url = f"{host.rstrip('/')}/capture/"
        self.timeout = timeout

    async def emit(self, signal: LifecycleSignal) -> None:
        """Send one capture call.

        Raises:
            httpx.HTTPError: Network error or non-2xx response
        """
        body = {
            "api_key": self.api_key,
            "event": signal.kind.value,
            "distinct_id": signal.account_id,
            "properties": signal.properties,
            "timestamp": signal.occurred_at.isoformat(),
        }
        async with httpx.AsyncClient() as client:
            response = await client.post(self.capture_url, json=body, timeout=self.timeout)
            response.raise_for_status()


class InMemoryLifecycleSink:
    """Collect signals in memory (tests, local runs)."""

    def __init__(self) -> None:
        self.signals: list[LifecycleSignal] = []

    async def emit(self, signal: LifecycleSignal) -> None:
        self.signals.append(signal)

    def kinds(self) -> list[SignalKind]:
        return [s.kind for s in self.signals]


class FailingLifecycleSink:
    """Always fails. Proves sink errors never leak into reconciliation."""

    async def emit(self, signal: LifecycleSignal) -> None:
        raise RuntimeError("lifecycle sink unavailable")


# ── Dispatch ──────────────────────────────────────────────────────────────────

async def dispatch_signals(
    signals: Iterable[LifecycleSignal],
    sink: Optional[LifecycleSink] = None,
) -> int:
    """Deliver signals one by one; a failing signal does not stop the rest.

    Returns:
        Number of signals delivered successfully.
    """
    target = sink if sink is not None else get_lifecycle_sink()
    delivered = 0
    for signal in signals:
        try:
            await target.emit(signal)
            delivered += 1
        except Exception:
            logger.exception(
                "LIFECYCLE_SINK_FAILED",
                extra={
                    "event": "lifecycle.sink_failed",
                    "signal": signal.kind.value,
                    "account_id": signal.account_id,
                },
            )
    return delivered


_sink: Optional[LifecycleSink] = None
_sink_lock = threading.Lock()


def get_lifecycle_sink() -> LifecycleSink:
    """Get the process-wide lifecycle sink (lazy init-once)."""
    global _sink
    if _sink is None:
        with _sink_lock:
            if _sink is None:
                api_key = get_analytics_api_key()
                if api_key:
                    _sink = HttpLifecycleSink(api_key, get_analytics_host())
                else:
                    _sink = LoggingLifecycleSink()
    return _sink
