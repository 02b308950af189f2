"""Billing error taxonomy.

Each error carries the HTTP status and machine-readable code that routes use
when translating it into a response, so the mapping lives in one place.
"""

from __future__ import annotations


class BillingError(Exception):
    status_code = 500
    code = "server_error"


class InvalidAmount(BillingError):
    """Non-positive or malformed quantity supplied by the caller."""

    status_code = 400
    code = "invalid_input"


class InsufficientCredits(BillingError):
    """The wallet balance cannot cover the requested debit."""

    status_code = 402
    code = "insufficient_credits"

    def __init__(self, user_id: str, requested: object) -> None:
        super().__init__(f"Insufficient credits for user {user_id}: requested {requested}.")
        self.user_id = user_id
        self.requested = requested


class SignatureInvalid(BillingError):
    """A provider notification failed signature verification."""

    status_code = 400
    code = "invalid_signature"


class LookupFailed(BillingError):
    """An external customer reference could not be resolved to a profile."""

    status_code = 500
    code = "lookup_failed"


class PersistenceError(BillingError):
    """The store was unreachable or rejected the write; nothing was applied."""

    status_code = 500
    code = "server_error"


class DuplicatePayment(PersistenceError):
    """A transaction already carries this payment confirmation reference."""

    status_code = 409
    code = "duplicate_payment"

    def __init__(self, payment_reference: str) -> None:
        super().__init__(f"Payment {payment_reference} has already been credited.")
        self.payment_reference = payment_reference


class PaymentProviderError(BillingError):
    """The payment provider failed or timed out; the remote outcome is unknown."""

    status_code = 502
    code = "payment_provider_error"

    def __init__(self, message: str, *, provider_code: str | None = None) -> None:
        super().__init__(message)
        self.provider_code = provider_code
