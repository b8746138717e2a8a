"""Lifecycle analytics signals."""

from billsync_api.analytics.sinks import (
    LifecycleSignal,
    LifecycleSink,
    SignalKind,
    dispatch_signals,
    get_lifecycle_sink,
)

__all__ = [
    "LifecycleSignal",
    "LifecycleSink",
    "SignalKind",
    "dispatch_signals",
    "get_lifecycle_sink",
]
