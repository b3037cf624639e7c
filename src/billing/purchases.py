"""
Purchase Ledger

Lifecycle of credit purchases: pending -> completed | failed. Completion is
idempotent because the status flip is a guarded update
(WHERE status = 'pending') and the balance is credited in the same
transaction only when that update hit a row. Webhooks delivered twice
therefore credit once.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional
import uuid
import structlog

from core.config import LedgerConfig
from core.credits import positive_credits, to_credits, usd_to_cents, cents_to_usd
from core.errors import InvalidAmount, TransactionNotFound, TransactionStateError
from persistence.database import Database
from persistence.models import CreditTransaction, TransactionStatus, TransactionType
from persistence.repository import TransactionRepository
from .deduction import DeductionEngine

logger = structlog.get_logger()

MAX_TRANSACTION_LIST = 200

# Purchasable packages. Bonus credits stay within the max bonus ratio.
CREDIT_PACKAGES: List[Dict[str, Any]] = [
    {"id": "starter", "name": "Starter", "amount_usd": 10, "credits": 100, "bonus_credits": 0},
    {"id": "growth", "name": "Growth", "amount_usd": 25, "credits": 250, "bonus_credits": 25},
    {"id": "business", "name": "Business", "amount_usd": 50, "credits": 500, "bonus_credits": 100},
    {"id": "scale", "name": "Scale", "amount_usd": 100, "credits": 1000, "bonus_credits": 300},
]


class PurchaseLedger:
    """Create, complete and fail credit purchases; award bonuses."""

    def __init__(
        self,
        db: Database,
        engine: DeductionEngine,
        config: Optional[LedgerConfig] = None,
    ):
        self.db = db
        self.engine = engine
        self.config = config or LedgerConfig()
        self.transactions = TransactionRepository(db)

    def max_credits_for(self, amount_usd: Decimal) -> Decimal:
        """Upper bound of credits purchasable for a USD amount."""
        base = (amount_usd * self.config.credits_per_usd).to_integral_value(rounding=ROUND_FLOOR)
        return base * self.config.max_bonus_ratio

    def create_purchase(
        self,
        account_id: str,
        amount_usd: Any,
        credits_amount: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        """Record a pending purchase. Balance is unchanged until completion."""
        usd = cents_to_usd(usd_to_cents(amount_usd))
        credits = to_credits(credits_amount)
        if usd < 1:
            raise InvalidAmount(f"Amount must be at least $1, got {usd}")
        if credits < 1:
            raise InvalidAmount(f"Credits amount must be at least 1, got {credits}")
        if credits > self.max_credits_for(usd):
            raise InvalidAmount(
                f"Invalid credit amount for the specified price: {credits} credits for ${usd}"
            )

        record = CreditTransaction(
            id=str(uuid.uuid4()),
            account_id=account_id,
            transaction_type=TransactionType.PURCHASE,
            credits_purchased=credits,
            amount_usd=usd,
            metadata=metadata or {},
        )
        self.transactions.create(record)

        logger.info(
            "purchase_created",
            transaction_id=record.id,
            account_id=account_id,
            amount_usd=str(usd),
            credits=str(credits),
        )
        return record

    def complete_purchase(
        self,
        transaction_id: str,
        external_charge_ref: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Mark a purchase completed and credit the account.

        Completing an already completed purchase returns it unchanged.
        Completing a failed purchase raises TransactionStateError.
        """
        with self.db.transaction() as tx:
            current = self.transactions.get(transaction_id, tx)
            if current is None:
                raise TransactionNotFound(transaction_id)

            if self.transactions.mark_completed(transaction_id, external_charge_ref, tx):
                self.engine.credit(current.account_id, current.credits_purchased, "purchased", tx=tx)
                completed = True
            else:
                completed = False
                current = self.transactions.get(transaction_id, tx)

        if not completed:
            if current.status == TransactionStatus.FAILED:
                raise TransactionStateError(transaction_id, current.status.value, TransactionStatus.COMPLETED.value)
            logger.info("purchase_completion_duplicate", transaction_id=transaction_id)
            return current

        logger.info(
            "purchase_completed",
            transaction_id=transaction_id,
            account_id=current.account_id,
            credits=str(current.credits_purchased),
            charge_id=external_charge_ref,
        )
        return self.transactions.get(transaction_id)

    def fail_purchase(self, transaction_id: str, reason: Optional[str] = None) -> CreditTransaction:
        """Mark a pending purchase failed. Repeating the call is a no-op."""
        with self.db.transaction() as tx:
            current = self.transactions.get(transaction_id, tx)
            if current is None:
                raise TransactionNotFound(transaction_id)
            failed = self.transactions.mark_failed(transaction_id, reason, tx)
            current = self.transactions.get(transaction_id, tx)

        if current.status == TransactionStatus.COMPLETED:
            raise TransactionStateError(transaction_id, current.status.value, TransactionStatus.FAILED.value)

        if failed:
            logger.warning("purchase_failed", transaction_id=transaction_id, reason=reason)
        return current

    def award_bonus(
        self,
        account_id: str,
        amount: Any,
        description: str,
        performed_by: Optional[str] = None,
    ) -> CreditTransaction:
        amount = positive_credits(amount)
        metadata = {"performed_by": performed_by} if performed_by else None
        return self.engine.award(account_id, amount, description, category="bonus", metadata=metadata)

    def get_transaction(self, transaction_id: str) -> CreditTransaction:
        record = self.transactions.get(transaction_id)
        if record is None:
            raise TransactionNotFound(transaction_id)
        return record

    def list_transactions(self, account_id: str, limit: int = 50) -> List[CreditTransaction]:
        if limit < 1 or limit > MAX_TRANSACTION_LIST:
            raise InvalidAmount(f"limit must be between 1 and {MAX_TRANSACTION_LIST}")
        return self.transactions.list_by_account(account_id, limit)

    def attach_payment_intent(self, transaction_id: str, payment_intent_id: str) -> None:
        self.transactions.set_payment_intent(transaction_id, payment_intent_id)

    def get_credit_pricing(self) -> Dict[str, Any]:
        return {
            "credits_per_usd": self.config.credits_per_usd,
            "max_bonus_ratio": float(self.config.max_bonus_ratio),
            "packages": [
                {
                    **package,
                    "total_credits": package["credits"] + package["bonus_credits"],
                    "price_per_credit": round(
                        package["amount_usd"] / (package["credits"] + package["bonus_credits"]), 4
                    ),
                }
                for package in CREDIT_PACKAGES
            ],
        }
