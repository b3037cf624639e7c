"""
Data Models for Persistence Layer

Credit amounts are Decimals in memory and integer units (0.0001 credit) in
storage; USD amounts are integer cents in storage.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import json

from core.credits import ZERO, cents_to_usd, from_units, to_units


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(value: Any) -> Dict[str, Any]:
    if isinstance(value, str) and value:
        return json.loads(value)
    return value or {}


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value else None


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(Enum):
    PURCHASE = "purchase"
    BONUS = "bonus"


class EntityType(Enum):
    STORE = "store"
    DOMAIN = "domain"


@dataclass
class AccountBalance:
    """Persisted per-account balance."""
    account_id: str
    balance: Decimal = ZERO
    total_purchased: Decimal = ZERO
    total_bonus: Decimal = ZERO
    total_used: Decimal = ZERO
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": float(self.balance),
            "total_purchased": float(self.total_purchased),
            "total_bonus": float(self.total_bonus),
            "total_used": float(self.total_used),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountBalance":
        return cls(
            account_id=row["account_id"],
            balance=from_units(row["balance"]),
            total_purchased=from_units(row.get("total_purchased")),
            total_bonus=from_units(row.get("total_bonus")),
            total_used=from_units(row.get("total_used")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class UsageRecord:
    """Immutable record of one successful deduction."""
    id: str
    account_id: str
    credits_used: Decimal
    usage_type: str
    description: str
    entity_id: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "entity_id": self.entity_id,
            "credits_used": float(self.credits_used),
            "usage_type": self.usage_type,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "description": self.description,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.account_id,
            self.entity_id,
            to_units(self.credits_used),
            self.usage_type,
            self.reference_id,
            self.reference_type,
            self.description,
            _dump_json(self.metadata),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            entity_id=row.get("entity_id"),
            credits_used=from_units(row["credits_used"]),
            usage_type=row["usage_type"],
            reference_id=row.get("reference_id"),
            reference_type=row.get("reference_type"),
            description=row["description"],
            metadata=_load_json(row.get("metadata")),
            created_at=row["created_at"],
        )


@dataclass
class CreditTransaction:
    """Purchase or bonus record with a pending/completed/failed lifecycle."""
    id: str
    account_id: str
    transaction_type: TransactionType
    credits_purchased: Decimal
    amount_usd: Decimal = Decimal("0.00")
    status: TransactionStatus = TransactionStatus.PENDING
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != TransactionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type.value,
            "amount_usd": float(self.amount_usd),
            "credits_purchased": float(self.credits_purchased),
            "status": self.status.value,
            "payment_intent_id": self.payment_intent_id,
            "charge_id": self.charge_id,
            "failure_reason": self.failure_reason,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.account_id,
            self.transaction_type.value,
            int(self.amount_usd * 100),
            to_units(self.credits_purchased),
            self.status.value,
            self.payment_intent_id,
            self.charge_id,
            self.failure_reason,
            _dump_json(self.metadata),
            self.created_at,
            self.updated_at,
            self.completed_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditTransaction":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            transaction_type=TransactionType(row["transaction_type"]),
            amount_usd=cents_to_usd(row.get("amount_usd_cents")),
            credits_purchased=from_units(row["credits_purchased"]),
            status=TransactionStatus(row["status"]),
            payment_intent_id=row.get("payment_intent_id"),
            charge_id=row.get("charge_id"),
            failure_reason=row.get("failure_reason"),
            metadata=_load_json(row.get("metadata")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
        )


@dataclass
class ServiceCost:
    """Rate catalog entry."""
    id: str
    service_key: str
    service_name: str
    cost_per_unit: Decimal
    billing_type: str
    service_category: str = "other"
    description: Optional[str] = None
    is_active: bool = True
    is_visible: bool = True
    display_order: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_by: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_key": self.service_key,
            "service_name": self.service_name,
            "service_category": self.service_category,
            "description": self.description,
            "cost_per_unit": float(self.cost_per_unit),
            "billing_type": self.billing_type,
            "is_active": self.is_active,
            "is_visible": self.is_visible,
            "display_order": self.display_order,
            "metadata": self.metadata,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.service_key,
            self.service_name,
            self.service_category,
            self.description,
            to_units(self.cost_per_unit),
            self.billing_type,
            1 if self.is_active else 0,
            1 if self.is_visible else 0,
            self.display_order,
            _dump_json(self.metadata),
            self.updated_by,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ServiceCost":
        return cls(
            id=row["id"],
            service_key=row["service_key"],
            service_name=row["service_name"],
            service_category=row.get("service_category", "other"),
            description=row.get("description"),
            cost_per_unit=from_units(row["cost_per_unit"]),
            billing_type=row["billing_type"],
            is_active=bool(row.get("is_active", 1)),
            is_visible=bool(row.get("is_visible", 1)),
            display_order=row.get("display_order", 0) or 0,
            metadata=_load_json(row.get("metadata")),
            updated_by=row.get("updated_by"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class DailyCharge:
    """Uptime log row: one charge per entity per billing day."""
    id: str
    entity_id: str
    entity_type: str
    account_id: str
    charged_date: str
    credits_charged: Decimal
    entity_name: Optional[str] = None
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    usage_id: Optional[str] = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "account_id": self.account_id,
            "charged_date": self.charged_date,
            "credits_charged": float(self.credits_charged),
            "balance_before": float(self.balance_before) if self.balance_before is not None else None,
            "balance_after": float(self.balance_after) if self.balance_after is not None else None,
            "usage_id": self.usage_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DailyCharge":
        before = row.get("balance_before")
        after = row.get("balance_after")
        return cls(
            id=row["id"],
            entity_id=row["entity_id"],
            entity_type=row["entity_type"],
            entity_name=row.get("entity_name"),
            account_id=row["account_id"],
            charged_date=row["charged_date"],
            credits_charged=from_units(row["credits_charged"]),
            balance_before=from_units(before) if before is not None else None,
            balance_after=from_units(after) if after is not None else None,
            usage_id=row.get("usage_id"),
            created_at=row["created_at"],
        )


@dataclass
class BillableEntity:
    """A published store or an active, verified custom domain."""
    entity_id: str
    entity_type: EntityType
    name: str
    owner_account_id: Optional[str] = None
    store_id: Optional[str] = None
    active: bool = True
    deactivation_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "name": self.name,
            "owner_account_id": self.owner_account_id,
            "store_id": self.store_id,
            "active": self.active,
            "deactivation_reason": self.deactivation_reason,
        }
