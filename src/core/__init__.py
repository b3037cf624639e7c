"""
Credit Ledger - Core Module

Amount arithmetic, configuration, the error taxonomy and billing reference
types shared by every other package.
"""

from .config import LedgerConfig
from .credits import CREDIT_PRECISION, to_credits, positive_credits
from .errors import (
    LedgerError,
    InsufficientCredits,
    ServiceNotFound,
    TransactionNotFound,
    TransactionStateError,
    EntityNotFound,
    InvalidAmount,
    InvalidReference,
    InvalidServiceDefinition,
    DuplicateService,
    StorageUnavailable,
    FleetBillingError,
)
from .references import ReferenceMetadata, ReferenceTypeRegistry

__all__ = [
    "LedgerConfig",
    "CREDIT_PRECISION",
    "to_credits",
    "positive_credits",
    "LedgerError",
    "InsufficientCredits",
    "ServiceNotFound",
    "TransactionNotFound",
    "TransactionStateError",
    "EntityNotFound",
    "InvalidAmount",
    "InvalidReference",
    "InvalidServiceDefinition",
    "DuplicateService",
    "StorageUnavailable",
    "FleetBillingError",
    "ReferenceMetadata",
    "ReferenceTypeRegistry",
]
