"""Error taxonomy shared by adapters, services, and the HTTP layer.

Five families are kept apart because callers treat them differently:

- ConfigurationError: the adapter has no credentials. Nothing to retry.
- AuthenticationError: credentials were rejected. Cached tokens/sessions are
  cleared and the call is retried exactly once by the adapter.
- NotFoundError: the entity is legitimately absent upstream. Logged at INFO,
  never alerted on, never retried.
- TransportError: rate-limited or unavailable. Retried with backoff by the
  adapter, then surfaced.
- DomainError: a business precondition failed. Never retried; the caller has
  to change its input (complete MFA, configure a recipient, ...).
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from payouts_engine.services.controls import ControlCheckResults


class PayoutsError(Exception):
    """Base class for all payouts engine errors."""

    def __init__(self, message: str, *, source: str | None = None):
        self.message = message
        self.source = source
        super().__init__(message)


# ============================================================================
# Adapter errors
# ============================================================================


class ConfigurationError(PayoutsError):
    """Adapter credentials are absent."""

    def __init__(self, source: str):
        super().__init__(f"{source} not configured", source=source)


class AuthenticationError(PayoutsError):
    """Credentials present but rejected by the provider."""


class NotFoundError(PayoutsError):
    """Entity does not exist (or no longer exists) upstream."""


class TransportError(PayoutsError):
    """Provider rate-limited us or is unavailable."""

    def __init__(
        self, message: str, *, source: str | None = None, status_code: int | None = None
    ):
        self.status_code = status_code
        super().__init__(message, source=source)


class ProviderError(PayoutsError):
    """Provider returned an error that is none of the above."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
        payload: Any = None,
    ):
        self.status_code = status_code
        self.code = code
        self.payload = payload
        super().__init__(message, source=source)


# ============================================================================
# Domain errors
# ============================================================================


class DomainError(PayoutsError):
    """A business precondition failed; requires different input to proceed.

    ``amount`` is the bill amount when the rejection happened after the bill
    was fetched.
    """

    amount: Decimal | None = None


class BillNotFound(DomainError):
    """Bill does not exist in the approval system."""

    def __init__(self, bill_id: str):
        self.bill_id = bill_id
        super().__init__(f"Bill not found: {bill_id}")


class WrongTenant(DomainError):
    """Bill belongs to a different tenant than the one requested."""

    def __init__(self, bill_id: str, expected: str, actual: str):
        self.bill_id = bill_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Bill {bill_id} belongs to tenant {actual}, not {expected}"
        )


class ControlsNotPassed(DomainError):
    """One or more controls failed; payment may not proceed."""

    def __init__(self, results: ControlCheckResults):
        from payouts_engine.services.controls import rejection_message

        self.results = results
        super().__init__(rejection_message(results))


class DuplicatePayment(DomainError):
    """An active payment record already exists for the bill."""

    def __init__(
        self,
        bill_id: str,
        status: str,
        record_id: Any = None,
        *,
        amount: Decimal | None = None,
    ):
        self.bill_id = bill_id
        self.status = status
        self.record_id = record_id
        self.amount = amount
        msg = f"Payment already {status}"
        if record_id is not None:
            msg += f" (record: {record_id})"
        super().__init__(msg)


class MfaRequired(DomainError):
    """US rail session is not trusted; complete MFA before paying."""

    def __init__(self, message: str = "MFA authentication required to pay bills"):
        super().__init__(message, source="billcom")


class RecipientUnresolved(DomainError):
    """No payable target could be resolved for a cross-border payee."""


class ConflictError(DomainError):
    """Requested change conflicts with the current state."""
