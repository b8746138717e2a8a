"""Request context management for observability.

Context variables for request tracking across async boundaries.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Account ID - account the current request or event resolved to
account_id_var: ContextVar[str] = ContextVar("account_id", default="")

# Provider event ID - webhook event being processed
event_id_var: ContextVar[str] = ContextVar("event_id", default="")
