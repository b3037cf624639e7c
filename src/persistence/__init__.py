"""
Persistence Layer for the Credit Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction
from .models import (
    AccountBalance,
    BillableEntity,
    CreditTransaction,
    DailyCharge,
    EntityType,
    ServiceCost,
    TransactionStatus,
    TransactionType,
    UsageRecord,
)
from .repository import (
    BalanceRepository,
    DailyChargeRepository,
    EntityRepository,
    ServiceCostRepository,
    TransactionRepository,
    UsageRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "AccountBalance",
    "BillableEntity",
    "CreditTransaction",
    "DailyCharge",
    "EntityType",
    "ServiceCost",
    "TransactionStatus",
    "TransactionType",
    "UsageRecord",
    "BalanceRepository",
    "DailyChargeRepository",
    "EntityRepository",
    "ServiceCostRepository",
    "TransactionRepository",
    "UsageRepository",
]
