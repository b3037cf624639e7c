"""
Repository Layer for the Credit Ledger

Provides the SQL for every persisted entity. Each method accepts an optional
executor: pass an open Transaction to join it, or leave it out to run the
statement in its own transaction.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import json
import structlog

from core.credits import from_units, to_units
from .database import Database, Transaction, utc_now
from .models import (
    AccountBalance,
    BillableEntity,
    CreditTransaction,
    DailyCharge,
    EntityType,
    ServiceCost,
    TransactionStatus,
    UsageRecord,
)

logger = structlog.get_logger()

Executor = Union[Database, Transaction]


class _Repository:
    def __init__(self, db: Database):
        self.db = db

    def _ex(self, tx: Optional[Transaction]) -> Executor:
        return tx if tx is not None else self.db


class BalanceRepository(_Repository):
    """Per-account balances. The only contended rows in the ledger."""

    def ensure_account(self, account_id: str, tx: Optional[Transaction] = None) -> None:
        """Create a zero balance row if the account has none yet."""
        now = utc_now()
        self._ex(tx).execute_update(
            """INSERT INTO credit_balances
               (account_id, balance, total_purchased, total_bonus, total_used, created_at, updated_at)
               VALUES (?, 0, 0, 0, 0, ?, ?)
               ON CONFLICT (account_id) DO NOTHING""",
            (account_id, now, now)
        )

    def get(self, account_id: str, tx: Optional[Transaction] = None) -> Optional[AccountBalance]:
        results = self._ex(tx).execute(
            "SELECT * FROM credit_balances WHERE account_id = ?",
            (account_id,)
        )
        return AccountBalance.from_row(results[0]) if results else None

    def get_or_create(self, account_id: str, tx: Optional[Transaction] = None) -> AccountBalance:
        self.ensure_account(account_id, tx)
        return self.get(account_id, tx)

    def try_debit(self, account_id: str, amount: Decimal, tx: Optional[Transaction] = None) -> bool:
        """
        Conditionally subtract amount from the balance.

        Returns True when the row was updated. The predicate is evaluated by
        the database under the row's write lock, so two concurrent debits can
        never both pass against the same funds.
        """
        units = to_units(amount)
        updated = self._ex(tx).execute_update(
            """UPDATE credit_balances
               SET balance = balance - ?, total_used = total_used + ?, updated_at = ?
               WHERE account_id = ? AND balance >= ?""",
            (units, units, utc_now(), account_id, units)
        )
        return updated == 1

    def credit(
        self,
        account_id: str,
        amount: Decimal,
        bucket: str = "purchased",
        tx: Optional[Transaction] = None,
    ) -> None:
        """Add amount to the balance, tracked under total_purchased or total_bonus."""
        column = {"purchased": "total_purchased", "bonus": "total_bonus"}[bucket]
        units = to_units(amount)
        self.ensure_account(account_id, tx)
        self._ex(tx).execute_update(
            f"""UPDATE credit_balances
                SET balance = balance + ?, {column} = {column} + ?, updated_at = ?
                WHERE account_id = ?""",
            (units, units, utc_now(), account_id)
        )


class UsageRepository(_Repository):
    """Append-only usage ledger."""

    def create(self, record: UsageRecord, tx: Optional[Transaction] = None) -> UsageRecord:
        self._ex(tx).execute_update(
            """INSERT INTO credit_usage
               (id, account_id, entity_id, credits_used, usage_type, reference_id,
                reference_type, description, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get(self, usage_id: str, tx: Optional[Transaction] = None) -> Optional[UsageRecord]:
        results = self._ex(tx).execute(
            "SELECT * FROM credit_usage WHERE id = ?",
            (usage_id,)
        )
        return UsageRecord.from_row(results[0]) if results else None

    def list_by_account(
        self,
        account_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        usage_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[UsageRecord]:
        """Usage for an account, newest first, optionally bounded by ISO timestamps."""
        query = "SELECT * FROM credit_usage WHERE account_id = ?"
        params: List[Any] = [account_id]
        if start:
            query += " AND created_at >= ?"
            params.append(start)
        if end:
            query += " AND created_at <= ?"
            params.append(end)
        if usage_type:
            query += " AND usage_type = ?"
            params.append(usage_type)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        results = self.db.execute(query, tuple(params))
        return [UsageRecord.from_row(r) for r in results]

    def count_by_account(self, account_id: str) -> int:
        results = self.db.execute(
            "SELECT COUNT(*) AS cnt FROM credit_usage WHERE account_id = ?",
            (account_id,)
        )
        return results[0]["cnt"] if results else 0

    def get_account_stats(
        self,
        account_id: str,
        since: str,
        usage_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Totals, per-usage-type breakdown and per-day series since an ISO timestamp."""
        where = "WHERE account_id = ? AND created_at >= ?"
        params: List[Any] = [account_id, since]
        if usage_type:
            where += " AND usage_type = ?"
            params.append(usage_type)

        totals = self.db.execute(
            f"SELECT COUNT(*) AS operations, SUM(credits_used) AS total FROM credit_usage {where}",
            tuple(params)
        )
        by_type = self.db.execute(
            f"""SELECT usage_type, COUNT(*) AS operations, SUM(credits_used) AS total
                FROM credit_usage {where}
                GROUP BY usage_type ORDER BY usage_type""",
            tuple(params)
        )
        by_day = self.db.execute(
            f"""SELECT SUBSTR(created_at, 1, 10) AS day, COUNT(*) AS operations, SUM(credits_used) AS total
                FROM credit_usage {where}
                GROUP BY SUBSTR(created_at, 1, 10) ORDER BY day""",
            tuple(params)
        )

        row = totals[0] if totals else {}
        return {
            "total_operations": row.get("operations", 0) or 0,
            "total_credits_used": from_units(row.get("total")),
            "by_usage_type": [
                {
                    "usage_type": r["usage_type"],
                    "operations": r["operations"],
                    "credits_used": from_units(r["total"]),
                }
                for r in by_type
            ],
            "daily": [
                {
                    "date": r["day"],
                    "operations": r["operations"],
                    "credits_used": from_units(r["total"]),
                }
                for r in by_day
            ],
        }


class TransactionRepository(_Repository):
    """Purchase and bonus records."""

    def create(self, record: CreditTransaction, tx: Optional[Transaction] = None) -> CreditTransaction:
        self._ex(tx).execute_update(
            """INSERT INTO credit_transactions
               (id, account_id, transaction_type, amount_usd_cents, credits_purchased,
                status, payment_intent_id, charge_id, failure_reason, metadata,
                created_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get(self, transaction_id: str, tx: Optional[Transaction] = None) -> Optional[CreditTransaction]:
        results = self._ex(tx).execute(
            "SELECT * FROM credit_transactions WHERE id = ?",
            (transaction_id,)
        )
        return CreditTransaction.from_row(results[0]) if results else None

    def list_by_account(self, account_id: str, limit: int = 50) -> List[CreditTransaction]:
        results = self.db.execute(
            """SELECT * FROM credit_transactions WHERE account_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (account_id, limit)
        )
        return [CreditTransaction.from_row(r) for r in results]

    def mark_completed(
        self,
        transaction_id: str,
        charge_id: Optional[str],
        tx: Optional[Transaction] = None,
    ) -> bool:
        """Flip pending to completed. False when the row was not pending."""
        now = utc_now()
        updated = self._ex(tx).execute_update(
            """UPDATE credit_transactions
               SET status = ?, charge_id = ?, completed_at = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (TransactionStatus.COMPLETED.value, charge_id, now, now,
             transaction_id, TransactionStatus.PENDING.value)
        )
        return updated == 1

    def mark_failed(
        self,
        transaction_id: str,
        reason: Optional[str],
        tx: Optional[Transaction] = None,
    ) -> bool:
        """Flip pending to failed. False when the row was not pending."""
        updated = self._ex(tx).execute_update(
            """UPDATE credit_transactions
               SET status = ?, failure_reason = ?, updated_at = ?
               WHERE id = ? AND status = ?""",
            (TransactionStatus.FAILED.value, reason, utc_now(),
             transaction_id, TransactionStatus.PENDING.value)
        )
        return updated == 1

    def set_payment_intent(self, transaction_id: str, payment_intent_id: str) -> None:
        self.db.execute_update(
            "UPDATE credit_transactions SET payment_intent_id = ?, updated_at = ? WHERE id = ?",
            (payment_intent_id, utc_now(), transaction_id)
        )


class ServiceCostRepository(_Repository):
    """Rate catalog rows. Read straight from storage on every call."""

    UPDATABLE_FIELDS = (
        "service_name", "service_category", "description", "cost_per_unit",
        "billing_type", "is_active", "is_visible", "display_order", "metadata",
    )

    def create(self, service: ServiceCost, tx: Optional[Transaction] = None) -> bool:
        """Insert a catalog entry. False if the service_key already exists."""
        inserted = self._ex(tx).execute_update(
            """INSERT INTO service_credit_costs
               (id, service_key, service_name, service_category, description,
                cost_per_unit, billing_type, is_active, is_visible, display_order,
                metadata, updated_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (service_key) DO NOTHING""",
            service.to_db_tuple()
        )
        return inserted == 1

    def get_by_key(self, service_key: str, tx: Optional[Transaction] = None) -> Optional[ServiceCost]:
        results = self._ex(tx).execute(
            "SELECT * FROM service_credit_costs WHERE service_key = ?",
            (service_key,)
        )
        return ServiceCost.from_row(results[0]) if results else None

    def list_services(
        self,
        category: Optional[str] = None,
        active_only: bool = False,
        visible_only: bool = False,
    ) -> List[ServiceCost]:
        query = "SELECT * FROM service_credit_costs WHERE 1 = 1"
        params: List[Any] = []
        if category:
            query += " AND service_category = ?"
            params.append(category)
        if active_only:
            query += " AND is_active = 1"
        if visible_only:
            query += " AND is_visible = 1"
        query += " ORDER BY service_category, display_order, service_name"
        results = self.db.execute(query, tuple(params))
        return [ServiceCost.from_row(r) for r in results]

    def update_fields(
        self,
        service_key: str,
        fields: Dict[str, Any],
        updated_by: Optional[str] = None,
    ) -> bool:
        """Update the given columns. Unknown field names are rejected."""
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        assignments = []
        params: List[Any] = []
        for name, value in fields.items():
            if name == "cost_per_unit":
                value = to_units(value)
            elif name in ("is_active", "is_visible"):
                value = 1 if value else 0
            elif name == "metadata":
                value = json.dumps(value) if value else None
            assignments.append(f"{name} = ?")
            params.append(value)

        assignments.extend(["updated_by = ?", "updated_at = ?"])
        params.extend([updated_by, utc_now(), service_key])

        updated = self.db.execute_update(
            f"UPDATE service_credit_costs SET {', '.join(assignments)} WHERE service_key = ?",
            tuple(params)
        )
        return updated == 1

    def flip_active(
        self,
        service_key: str,
        updated_by: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> bool:
        """Invert is_active in a single statement. False if the key is unknown."""
        updated = self._ex(tx).execute_update(
            """UPDATE service_credit_costs
               SET is_active = 1 - is_active, updated_by = ?, updated_at = ?
               WHERE service_key = ?""",
            (updated_by, utc_now(), service_key)
        )
        return updated == 1

    def delete(self, service_key: str) -> bool:
        deleted = self.db.execute_update(
            "DELETE FROM service_credit_costs WHERE service_key = ?",
            (service_key,)
        )
        return deleted == 1


class DailyChargeRepository(_Repository):
    """Uptime log. (entity_id, charged_date) is unique."""

    def try_reserve(self, charge: DailyCharge, tx: Optional[Transaction] = None) -> bool:
        """
        Insert the charge row for the day if none exists.

        Returns False when the entity was already charged for charged_date.
        """
        inserted = self._ex(tx).execute_update(
            """INSERT INTO daily_charges
               (id, entity_id, entity_type, entity_name, account_id, charged_date,
                credits_charged, balance_before, balance_after, usage_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, ?)
               ON CONFLICT (entity_id, charged_date) DO NOTHING""",
            (charge.id, charge.entity_id, charge.entity_type, charge.entity_name,
             charge.account_id, charge.charged_date, to_units(charge.credits_charged),
             charge.created_at)
        )
        return inserted == 1

    def finalize(
        self,
        charge_id: str,
        balance_before: Decimal,
        balance_after: Decimal,
        usage_id: str,
        tx: Optional[Transaction] = None,
    ) -> None:
        self._ex(tx).execute_update(
            """UPDATE daily_charges
               SET balance_before = ?, balance_after = ?, usage_id = ?
               WHERE id = ?""",
            (to_units(balance_before), to_units(balance_after), usage_id, charge_id)
        )

    def get(self, entity_id: str, charged_date: str) -> Optional[DailyCharge]:
        results = self.db.execute(
            "SELECT * FROM daily_charges WHERE entity_id = ? AND charged_date = ?",
            (entity_id, charged_date)
        )
        return DailyCharge.from_row(results[0]) if results else None

    def list_for_account(
        self,
        account_id: str,
        since_date: str,
        entity_id: Optional[str] = None,
    ) -> List[DailyCharge]:
        query = "SELECT * FROM daily_charges WHERE account_id = ? AND charged_date >= ?"
        params: List[Any] = [account_id, since_date]
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY charged_date DESC, entity_id"
        results = self.db.execute(query, tuple(params))
        return [DailyCharge.from_row(r) for r in results]

    def count_for_entity(self, entity_id: str) -> int:
        results = self.db.execute(
            "SELECT COUNT(*) AS cnt FROM daily_charges WHERE entity_id = ?",
            (entity_id,)
        )
        return results[0]["cnt"] if results else 0


class EntityRepository(_Repository):
    """Accounts, stores and custom domains owned by the platform."""

    def create_account(self, account_id: str, email: Optional[str] = None, name: Optional[str] = None) -> None:
        self.db.execute_update(
            """INSERT INTO accounts (id, email, name, created_at) VALUES (?, ?, ?, ?)
               ON CONFLICT (id) DO NOTHING""",
            (account_id, email, name, utc_now())
        )

    def account_exists(self, account_id: str) -> bool:
        return bool(self.db.execute("SELECT 1 AS found FROM accounts WHERE id = ?", (account_id,)))

    def create_store(
        self,
        store_id: str,
        name: str,
        owner_account_id: Optional[str],
        published: bool = True,
    ) -> None:
        now = utc_now()
        self.db.execute_update(
            """INSERT INTO stores (id, name, owner_account_id, published, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (store_id, name, owner_account_id, 1 if published else 0, now, now)
        )

    def create_domain(
        self,
        domain_id: str,
        domain: str,
        store_id: Optional[str],
        is_active: bool = True,
        verification_status: str = "verified",
    ) -> None:
        now = utc_now()
        self.db.execute_update(
            """INSERT INTO custom_domains
               (id, domain, store_id, is_active, verification_status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (domain_id, domain, store_id, 1 if is_active else 0, verification_status, now, now)
        )

    def get_store(self, store_id: str) -> Optional[BillableEntity]:
        results = self.db.execute("SELECT * FROM stores WHERE id = ?", (store_id,))
        return self._store_from_row(results[0]) if results else None

    def get_domain(self, domain_id: str) -> Optional[BillableEntity]:
        results = self.db.execute(
            """SELECT d.*, s.owner_account_id AS owner_account_id
               FROM custom_domains d LEFT JOIN stores s ON s.id = d.store_id
               WHERE d.id = ?""",
            (domain_id,)
        )
        return self._domain_from_row(results[0]) if results else None

    def list_published_stores(self) -> List[BillableEntity]:
        results = self.db.execute(
            "SELECT * FROM stores WHERE published = 1 ORDER BY created_at, id"
        )
        return [self._store_from_row(r) for r in results]

    def list_billable_domains(self) -> List[BillableEntity]:
        results = self.db.execute(
            """SELECT d.*, s.owner_account_id AS owner_account_id
               FROM custom_domains d LEFT JOIN stores s ON s.id = d.store_id
               WHERE d.is_active = 1 AND d.verification_status = 'verified'
               ORDER BY d.created_at, d.id"""
        )
        return [self._domain_from_row(r) for r in results]

    def deactivate_store(self, store_id: str, reason: str) -> bool:
        now = utc_now()
        updated = self.db.execute_update(
            """UPDATE stores SET published = 0, deactivation_reason = ?, deactivated_at = ?, updated_at = ?
               WHERE id = ?""",
            (reason, now, now, store_id)
        )
        return updated == 1

    def deactivate_domain(self, domain_id: str, reason: str) -> bool:
        now = utc_now()
        updated = self.db.execute_update(
            """UPDATE custom_domains SET is_active = 0, deactivation_reason = ?, deactivated_at = ?, updated_at = ?
               WHERE id = ?""",
            (reason, now, now, domain_id)
        )
        return updated == 1

    @staticmethod
    def _store_from_row(row: Dict[str, Any]) -> BillableEntity:
        return BillableEntity(
            entity_id=row["id"],
            entity_type=EntityType.STORE,
            name=row["name"],
            owner_account_id=row.get("owner_account_id"),
            active=bool(row.get("published")),
            deactivation_reason=row.get("deactivation_reason"),
        )

    @staticmethod
    def _domain_from_row(row: Dict[str, Any]) -> BillableEntity:
        return BillableEntity(
            entity_id=row["id"],
            entity_type=EntityType.DOMAIN,
            name=row["domain"],
            owner_account_id=row.get("owner_account_id"),
            store_id=row.get("store_id"),
            active=bool(row.get("is_active")) and row.get("verification_status") == "verified",
            deactivation_reason=row.get("deactivation_reason"),
        )
