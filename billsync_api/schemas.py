"""Pydantic schemas for API requests/responses."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from billsync_api.billing.status_mapper import SubscriptionState


# ============================================================================
# Errors
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP APIs."""

    type: str = Field(default="about:blank", description="Problem type URI")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: Optional[str | dict[str, Any]] = Field(
        default=None, description="Human-readable explanation"
    )
    instance: Optional[str] = Field(default=None, description="Occurrence identifier")


# ============================================================================
# Webhooks
# ============================================================================


class WebhookAck(BaseModel):
    """Response for POST /api/webhook/stripe."""

    received: bool = True
    status: str = Field(..., description="processed | already_processed")


# ============================================================================
# Auth
# ============================================================================


class SignInRequest(BaseModel):
    """Body for POST /api/auth/session."""

    id_token: str = Field(..., min_length=1, description="Identity-provider assertion (JWT)")


class SessionView(BaseModel):
    """Current session claims."""

    account_id: str
    email: str
    name: Optional[str] = None
    subscription_state: SubscriptionState
    has_lifetime_access: bool
    onboarding_completed: bool
    issued_at: datetime
    refreshed_at: datetime
    expires_at: datetime


# ============================================================================
# Checkout / portal
# ============================================================================


class CheckoutSessionRequest(BaseModel):
    """Body for POST /api/stripe/create-checkout-session."""

    price_id: Optional[str] = Field(default=None, description="Defaults to the basic plan")


class RedirectUrlResponse(BaseModel):
    url: str


class PortalRequest(BaseModel):
    """Body for POST /api/stripe/create-portal."""

    return_url: Optional[str] = None


# ============================================================================
# Account
# ============================================================================


class SubscriptionStatusResponse(BaseModel):
    """Response for GET /api/user/subscription-status (read from the database)."""

    subscription_state: SubscriptionState
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    has_lifetime_access: bool = False
    onboarding_completed: bool = False
    subscribed_at: Optional[datetime] = None


class OnboardingRequest(BaseModel):
    variant: Optional[str] = Field(default=None, description="Onboarding flow variant")


class ResumeSubscriptionRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)


class DeleteAccountResponse(BaseModel):
    deleted: bool = True
    subscription_canceled: bool = Field(
        default=False, description="Provider subscription was canceled by this request"
    )
