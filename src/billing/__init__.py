"""
Billing Module

- RateCatalog: service keys to per-unit credit costs
- DeductionEngine: atomic balance deduction plus usage recording
- PurchaseLedger: purchase lifecycle and bonuses
- FleetBillingScheduler: once-per-day charging of stores and custom domains
- StripeIntegration: payment intents and webhook settlement
"""

from .rate_catalog import RateCatalog, BILLING_TYPES, SERVICE_CATEGORIES
from .deduction import DeductionEngine, DeductionResult, DeductionStatus, LowBalanceWarning
from .purchases import PurchaseLedger, CREDIT_PACKAGES
from .directory import EntityDirectory, SqlEntityDirectory
from .fleet import FleetBillingScheduler
from .reporting import CreditReporting
from .stripe_integration import StripeIntegration, StripeIntegrationError

__all__ = [
    "RateCatalog",
    "BILLING_TYPES",
    "SERVICE_CATEGORIES",
    "DeductionEngine",
    "DeductionResult",
    "DeductionStatus",
    "LowBalanceWarning",
    "PurchaseLedger",
    "CREDIT_PACKAGES",
    "EntityDirectory",
    "SqlEntityDirectory",
    "FleetBillingScheduler",
    "CreditReporting",
    "StripeIntegration",
    "StripeIntegrationError",
]
