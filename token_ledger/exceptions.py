"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger and reconciliation errors."""

    pass


# ============================================================================
# Ledger / Usage
# ============================================================================


class InsufficientBalanceError(LedgerError):
    """Raised when the pre-flight estimate cannot be covered by the balance."""

    def __init__(self, balance: int, required: int, shortfall: int) -> None:
        self.balance = balance
        self.required = required
        self.shortfall = shortfall
        super().__init__(
            f"Insufficient tokens. Balance: {balance}, Required: {required}, "
            f"Shortfall: {shortfall}"
        )


class AccountNotFoundError(LedgerError):
    """Raised when account doesn't exist."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class ModelAccessDeniedError(LedgerError):
    """Raised when the account's plan does not cover the model's tier."""

    def __init__(self, model_id: str, required_tier: str) -> None:
        self.model_id = model_id
        self.required_tier = required_tier
        super().__init__(f"Access denied. This {required_tier} model requires a suitable plan.")


class ProviderUnavailableError(LedgerError):
    """Raised when the upstream model provider call fails or times out."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"Model provider {provider} unavailable: {message}")


# ============================================================================
# Plan Catalog
# ============================================================================


class PlanNotFoundError(LedgerError):
    """Raised when a plan doesn't exist or is inactive."""

    def __init__(self, plan_id: UUID | str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Plan not found: {plan_id}")


class PlanNotFreeError(LedgerError):
    """Raised when a priced plan is claimed without payment."""

    def __init__(self, plan_id: UUID, price_minor: int) -> None:
        self.plan_id = plan_id
        self.price_minor = price_minor
        super().__init__(f"Plan {plan_id} costs {price_minor}; purchase it through checkout")


class PlanImmutableError(LedgerError):
    """Raised when price, grant or tier of an already purchased plan is edited."""

    def __init__(self, plan_id: UUID, fields: list[str]) -> None:
        self.plan_id = plan_id
        self.fields = fields
        super().__init__(
            f"Plan {plan_id} has completed purchases; cannot change {', '.join(fields)}"
        )


# ============================================================================
# Reconciliation
# ============================================================================


class SignatureInvalidError(LedgerError):
    """Raised when an HMAC signature does not match the signed content."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Invalid {source} signature")


class MetadataMissingError(LedgerError):
    """Raised when a payment cannot be resolved to a plan and a user."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment metadata missing: {message}")


class MetadataMismatchError(MetadataMissingError):
    """Raised when client-supplied identifiers disagree with the gateway order."""

    def __init__(self, field: str, expected: str | None, actual: str | None) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(f"{field} mismatch (order={expected}, request={actual})")


class PaymentNotCapturedError(MetadataMissingError):
    """Raised when the gateway reports the payment in a non-creditable state."""

    def __init__(self, payment_id: str, status: str) -> None:
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"payment {payment_id} not captured (status={status})")


class PaymentEventNotFoundError(LedgerError):
    """Raised when a stored payment event doesn't exist."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Payment event not found: {event_id}")


class EventNotRetryableError(LedgerError):
    """Raised when a manual retry targets a processed or unsupported event."""

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Event {event_id} cannot be retried: {reason}")


class GatewayUnavailableError(LedgerError):
    """Raised when the payment gateway lookup fails or times out."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment gateway unavailable: {message}")


# ============================================================================
# Persistence
# ============================================================================


class PersistenceError(LedgerError):
    """Raised when a database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Persistence failure: {message}")


class WriteVerificationError(PersistenceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PersistenceError):
    """Raised when a ledger invariant is violated after a write."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")


# ============================================================================
# Auth
# ============================================================================


class AuthenticationError(LedgerError):
    """Raised when bearer token authentication fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
