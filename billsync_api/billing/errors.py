"""Billing error taxonomy.

Every error carries a stable ``code`` used in logs and problem+json bodies.
Fraud and provider errors are never shown to end users with their details.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for reconciliation and billing errors."""

    code = "BILLING_ERROR"

    def __init__(self, message: str = "", **context: object):
        super().__init__(message or self.code)
        self.context = context


class SignatureVerificationFailed(BillingError):
    """Inbound webhook signature did not verify; the request is discarded."""

    code = "WEBHOOK_SIGNATURE_INVALID"


class WebhookMisconfigured(BillingError):
    """Our side is missing the webhook signing secret."""

    code = "WEBHOOK_PROVIDER_MISCONFIG"


class DuplicateEvent(BillingError):
    """Ledger conflict: the event was already fully processed.

    Not an error for callers, they return success and skip side effects.
    """

    code = "DUPLICATE_EVENT"

    def __init__(self, external_event_id: str):
        super().__init__(f"event already processed: {external_event_id}")
        self.external_event_id = external_event_id


class FraudRejected(BillingError):
    """Checkout vetoed by FraudGuard."""

    code = "CHECKOUT_REJECTED"


class DisposableEmailRejected(FraudRejected):
    code = "DISPOSABLE_EMAIL_REJECTED"


class DuplicateInstrumentRejected(FraudRejected):
    code = "DUPLICATE_INSTRUMENT_REJECTED"


class AccountNotFound(BillingError):
    """No account matches the account id / provider customer reference."""

    code = "ACCOUNT_NOT_FOUND"


class ProviderLookupFailed(BillingError):
    """Transient provider-side or network error while talking to Stripe."""

    code = "PROVIDER_LOOKUP_FAILED"

    def __init__(self, message: str = "", *, operation: Optional[str] = None, **context: object):
        super().__init__(message, operation=operation, **context)
        self.operation = operation


class CredentialRotationFailed(BillingError):
    """Session credential could not be re-issued; the stale one stays valid."""

    code = "CREDENTIAL_ROTATION_FAILED"


class InvalidSessionCredential(BillingError):
    """Session cookie is missing, malformed, tampered with, or expired."""

    code = "SESSION_INVALID"
