"""Billsync API: subscription state reconciliation service."""

__version__ = "0.3.0"
