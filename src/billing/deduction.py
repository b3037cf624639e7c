"""
Deduction Engine

Every balance-decreasing operation in the platform goes through here. A
deduction is one database transaction holding two writes:

1. a conditional decrement (UPDATE ... WHERE balance >= amount)
2. the usage record describing what was charged and why

Either both are durable or neither is. An insufficient balance is not an
exception: deduct() returns a DeductionResult with status
INSUFFICIENT_CREDITS and the balance is left untouched. Callers that prefer
exceptions call result.unwrap().
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid
import structlog

from core.credits import ZERO, positive_credits, to_credits
from core.errors import InsufficientCredits
from core.references import ReferenceTypeRegistry
from persistence.database import Database, Transaction, utc_now
from persistence.models import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    UsageRecord,
)
from persistence.repository import BalanceRepository, TransactionRepository, UsageRepository
from .rate_catalog import RateCatalog

logger = structlog.get_logger()


class DeductionStatus(Enum):
    SUCCESS = "success"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass
class DeductionResult:
    """Outcome of a deduction attempt."""
    status: DeductionStatus
    account_id: str
    required: Decimal
    available: Decimal
    usage_id: Optional[str] = None
    credits_deducted: Decimal = ZERO
    remaining_balance: Optional[Decimal] = None
    entity_id: Optional[str] = None
    usage_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeductionStatus.SUCCESS

    @property
    def balance_before(self) -> Decimal:
        return self.available

    def unwrap(self) -> "DeductionResult":
        """Return self on success, raise InsufficientCredits otherwise."""
        if not self.succeeded:
            raise InsufficientCredits(self.required, self.available)
        return self

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status.value,
            "account_id": self.account_id,
            "required": float(self.required),
            "available": float(self.available),
        }
        if self.succeeded:
            data.update({
                "usage_id": self.usage_id,
                "credits_deducted": float(self.credits_deducted),
                "remaining_balance": float(self.remaining_balance),
            })
        return data


DeductionListener = Callable[[DeductionResult], None]


class LowBalanceWarning:
    """Logs a warning when a deduction leaves the balance below a threshold."""

    def __init__(self, threshold: Decimal):
        self.threshold = to_credits(threshold)

    def __call__(self, result: DeductionResult) -> None:
        if result.remaining_balance is not None and result.remaining_balance < self.threshold:
            logger.warning(
                "low_balance",
                account_id=result.account_id,
                remaining_balance=str(result.remaining_balance),
                threshold=str(self.threshold),
            )


class DeductionEngine:
    """
    Atomic balance deduction with usage recording.

    Usage:
        engine = DeductionEngine(db, RateCatalog(db))
        result = engine.deduct("acct_1", Decimal("2.00"), "AI translation")
        if not result.succeeded:
            ...
    """

    def __init__(
        self,
        db: Database,
        catalog: RateCatalog,
        references: Optional[ReferenceTypeRegistry] = None,
    ):
        self.db = db
        self.catalog = catalog
        self.references = references or ReferenceTypeRegistry()
        self.balances = BalanceRepository(db)
        self.usage = UsageRepository(db)
        self.transactions = TransactionRepository(db)
        self._listeners: List[DeductionListener] = []

    def add_listener(self, listener: DeductionListener) -> None:
        """Register a callable run after every committed deduction."""
        self._listeners.append(listener)

    def deduct(
        self,
        account_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        usage_type: str = "general",
        tx: Optional[Transaction] = None,
    ) -> DeductionResult:
        """
        Deduct credits from an account.

        Raises InvalidAmount for a non-positive amount and InvalidReference
        when metadata does not match the registered reference type. Pass tx
        to make the deduction part of a larger transaction.
        """
        amount = positive_credits(amount)
        metadata = self.references.validate(reference_type, metadata)

        with self.db.joined(tx) as t:
            self.balances.ensure_account(account_id, t)

            if not self.balances.try_debit(account_id, amount, t):
                current = self.balances.get(account_id, t)
                available = current.balance if current else ZERO
                logger.warning(
                    "deduction_declined",
                    account_id=account_id,
                    required=str(amount),
                    available=str(available),
                    usage_type=usage_type,
                    entity_id=entity_id,
                )
                return DeductionResult(
                    status=DeductionStatus.INSUFFICIENT_CREDITS,
                    account_id=account_id,
                    required=amount,
                    available=available,
                    entity_id=entity_id,
                    usage_type=usage_type,
                )

            remaining = self.balances.get(account_id, t).balance
            record = UsageRecord(
                id=str(uuid.uuid4()),
                account_id=account_id,
                entity_id=entity_id,
                credits_used=amount,
                usage_type=usage_type,
                reference_id=reference_id,
                reference_type=reference_type,
                description=description,
                metadata=metadata,
            )
            self.usage.create(record, t)

            result = DeductionResult(
                status=DeductionStatus.SUCCESS,
                account_id=account_id,
                required=amount,
                available=remaining + amount,
                usage_id=record.id,
                credits_deducted=amount,
                remaining_balance=remaining,
                entity_id=entity_id,
                usage_type=usage_type,
            )
            # Runs at the outermost commit; a caller's rollback drops it
            t.after_commit(lambda: self._committed(result, reference_type))

        return result

    def deduct_for_service(
        self,
        account_id: str,
        service_key: str,
        units: Any = 1,
        description: Optional[str] = None,
        **kwargs: Any,
    ) -> DeductionResult:
        """Price units of a catalog service and deduct the cost."""
        cost = self.catalog.calculate_cost(service_key, units, tx=kwargs.get("tx"))
        kwargs.setdefault("usage_type", service_key)
        return self.deduct(
            account_id,
            cost,
            description or f"{service_key} x {units}",
            **kwargs,
        )

    def credit(
        self,
        account_id: str,
        amount: Any,
        category: str = "purchased",
        tx: Optional[Transaction] = None,
    ) -> Decimal:
        """Increase the balance without a transaction record. Returns the new balance."""
        amount = positive_credits(amount)
        with self.db.joined(tx) as t:
            self.balances.credit(account_id, amount, bucket=category, tx=t)
            balance = self.balances.get(account_id, t).balance
        logger.info("credits_added", account_id=account_id, amount=str(amount), category=category)
        return balance

    def award(
        self,
        account_id: str,
        amount: Any,
        description: str,
        category: str = "bonus",
        metadata: Optional[Dict[str, Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> CreditTransaction:
        """Unconditionally add credits and append a completed transaction record."""
        amount = positive_credits(amount)
        transaction_type = TransactionType.BONUS if category == "bonus" else TransactionType.PURCHASE
        now = utc_now()
        record = CreditTransaction(
            id=str(uuid.uuid4()),
            account_id=account_id,
            transaction_type=transaction_type,
            credits_purchased=amount,
            status=TransactionStatus.COMPLETED,
            metadata={"description": description, **(metadata or {})},
            created_at=now,
            updated_at=now,
            completed_at=now,
        )

        bucket = "bonus" if transaction_type == TransactionType.BONUS else "purchased"
        with self.db.joined(tx) as t:
            self.balances.credit(account_id, amount, bucket=bucket, tx=t)
            self.transactions.create(record, t)

        logger.info(
            "credits_awarded",
            account_id=account_id,
            amount=str(amount),
            category=category,
            transaction_id=record.id,
        )
        return record

    def get_balance(self, account_id: str) -> Decimal:
        """Current balance. Zero for an account with no history."""
        return self.balances.get_or_create(account_id).balance

    def has_enough_credits(self, account_id: str, amount: Any) -> bool:
        return self.get_balance(account_id) >= to_credits(amount)

    def can_afford(self, account_id: str, service_key: str, units: Any = 1) -> Dict[str, Any]:
        """Check whether an account can pay for units of a service right now."""
        required = self.catalog.calculate_cost(service_key, units)
        available = self.get_balance(account_id)
        return {
            "can_afford": available >= required,
            "required": required,
            "available": available,
            "service_key": service_key,
        }

    def calculate_cost(self, service_key: str, units: Any = 1) -> Decimal:
        return self.catalog.calculate_cost(service_key, units)

    def _committed(self, result: DeductionResult, reference_type: Optional[str]) -> None:
        logger.info(
            "usage_deducted",
            account_id=result.account_id,
            amount=str(result.credits_deducted),
            remaining_balance=str(result.remaining_balance),
            usage_type=result.usage_type,
            reference_type=reference_type,
            usage_id=result.usage_id,
        )
        self._notify(result)

    def _notify(self, result: DeductionResult) -> None:
        for listener in self._listeners:
            try:
                listener(result)
            except Exception as e:
                logger.error(
                    "deduction_listener_failed",
                    listener=getattr(listener, "__name__", type(listener).__name__),
                    account_id=result.account_id,
                    error=str(e),
                )
