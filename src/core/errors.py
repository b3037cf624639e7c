"""
Ledger Error Taxonomy

Every error raised by the ledger derives from LedgerError so the HTTP layer
and the CLI can map them in one place.

- InsufficientCredits: recoverable, the caller decides (top-up or deactivate)
- ServiceNotFound: rate catalog misconfiguration
- TransactionNotFound / TransactionStateError: purchase lifecycle misuse
- EntityNotFound: billable entity or its owner is missing
- StorageUnavailable: systemic, never recorded as per-entity attrition
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""
    code = "LEDGER_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class InsufficientCredits(LedgerError):
    """Balance does not cover the requested amount."""
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "required": float(self.required),
            "available": float(self.available),
        }


class ServiceNotFound(LedgerError):
    """Service key is absent from the rate catalog or inactive."""
    code = "SERVICE_NOT_FOUND"

    def __init__(self, service_key: str, inactive: bool = False):
        self.service_key = service_key
        self.inactive = inactive
        state = "inactive" if inactive else "not found"
        super().__init__(f"Service {state}: {service_key}")


class TransactionNotFound(LedgerError):
    """Purchase transaction does not exist."""
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class TransactionStateError(LedgerError):
    """Transaction is terminal and cannot move to the requested status."""
    code = "TRANSACTION_STATE_ERROR"

    def __init__(self, transaction_id: str, current: str, requested: str):
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transaction {transaction_id} is {current}, cannot mark as {requested}"
        )


class EntityNotFound(LedgerError):
    """Billable entity, or the account owning it, cannot be resolved."""
    code = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Optional[str], detail: str = ""):
        self.entity_type = entity_type
        self.entity_id = entity_id
        message = f"{entity_type} not found: {entity_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class InvalidAmount(LedgerError, ValueError):
    """Amount is zero, negative or not a number."""
    code = "INVALID_AMOUNT"


class InvalidReference(LedgerError, ValueError):
    """Reference type is unregistered or its metadata has the wrong shape."""
    code = "INVALID_REFERENCE"


class InvalidServiceDefinition(LedgerError, ValueError):
    """Catalog entry has an unknown billing type or category."""
    code = "INVALID_SERVICE"


class DuplicateService(LedgerError):
    """A catalog entry with this service_key already exists."""
    code = "DUPLICATE_SERVICE"

    def __init__(self, service_key: str):
        self.service_key = service_key
        super().__init__(f"Service with key {service_key} already exists")


class StorageUnavailable(LedgerError):
    """The balance store cannot be reached or refused the operation."""
    code = "STORAGE_UNAVAILABLE"


class FleetBillingError(LedgerError):
    """A billing cycle over a non-empty fleet produced zero successes."""
    code = "FLEET_BILLING_FAILED"

    def __init__(self, message: str, summary: Dict[str, Any]):
        self.summary = summary
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "summary": self.summary}
