"""Subscription reconciliation core."""
