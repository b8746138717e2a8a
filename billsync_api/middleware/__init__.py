"""Middleware modules."""

from .access_gate import AccessGateMiddleware

__all__ = [
    "AccessGateMiddleware",
]
