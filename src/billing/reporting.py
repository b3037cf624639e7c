"""
Credit Reporting

Read-only views over balances, the usage ledger and the uptime log.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.credits import ZERO
from core.errors import InvalidAmount
from persistence.database import Database
from persistence.models import EntityType
from persistence.repository import (
    BalanceRepository,
    DailyChargeRepository,
    EntityRepository,
    UsageRepository,
)

MAX_STATS_DAYS = 365
MAX_USAGE_LIMIT = 1000


def _check_days(days: int) -> None:
    if days < 1 or days > MAX_STATS_DAYS:
        raise InvalidAmount(f"days must be between 1 and {MAX_STATS_DAYS}")


class CreditReporting:
    """Balance, usage and uptime reports for an account."""

    def __init__(self, db: Database):
        self.balances = BalanceRepository(db)
        self.usage = UsageRepository(db)
        self.charges = DailyChargeRepository(db)
        self.entities = EntityRepository(db)

    def get_credit_info(self, account_id: str, recent: int = 10) -> Dict[str, Any]:
        balance = self.balances.get_or_create(account_id)
        recent_usage = self.usage.list_by_account(account_id, limit=recent)
        return {
            **balance.to_dict(),
            "usage_count": self.usage.count_by_account(account_id),
            "recent_usage": [u.to_dict() for u in recent_usage],
        }

    def get_usage_history(
        self,
        account_id: str,
        start: Optional[str] = None,
        end: Optional[str] = None,
        usage_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        if limit < 1 or limit > MAX_USAGE_LIMIT:
            raise InvalidAmount(f"limit must be between 1 and {MAX_USAGE_LIMIT}")
        records = self.usage.list_by_account(account_id, start, end, usage_type, limit)
        return [r.to_dict() for r in records]

    def get_usage_stats(
        self,
        account_id: str,
        days: int = 30,
        usage_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        _check_days(days)
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        stats = self.usage.get_account_stats(account_id, since, usage_type)

        total: Decimal = stats["total_credits_used"]
        return {
            "account_id": account_id,
            "period_days": days,
            "usage_type": usage_type,
            "total_operations": stats["total_operations"],
            "total_credits_used": float(total),
            "average_daily_usage": float((total / days).quantize(Decimal("0.0001"))),
            "by_usage_type": [
                {**row, "credits_used": float(row["credits_used"])} for row in stats["by_usage_type"]
            ],
            "daily": [
                {**row, "credits_used": float(row["credits_used"])} for row in stats["daily"]
            ],
        }

    def get_uptime_report(
        self,
        account_id: str,
        days: int = 30,
        entity_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        _check_days(days)
        since = (datetime.now(timezone.utc) - timedelta(days=days)).date().isoformat()
        records = self.charges.list_for_account(account_id, since, entity_id)

        breakdown: Dict[str, Dict[str, Any]] = {}
        total_credits = ZERO
        for record in records:
            total_credits += record.credits_charged
            entry = breakdown.setdefault(record.entity_id, {
                "entity_id": record.entity_id,
                "entity_type": record.entity_type,
                "entity_name": record.entity_name,
                "days_charged": 0,
                "total_credits": ZERO,
                "first_charge": record.charged_date,
                "last_charge": record.charged_date,
            })
            entry["days_charged"] += 1
            entry["total_credits"] += record.credits_charged
            entry["first_charge"] = min(entry["first_charge"], record.charged_date)
            entry["last_charge"] = max(entry["last_charge"], record.charged_date)

        for entry in breakdown.values():
            entry["total_credits"] = float(entry["total_credits"])
            entry["currently_active"] = self._is_active(entry["entity_type"], entry["entity_id"])

        dates = [r.charged_date for r in records]
        return {
            "account_id": account_id,
            "period_days": days,
            "records": [r.to_dict() for r in records],
            "summary": {
                "total_entities": len(breakdown),
                "total_days_charged": len({r.charged_date for r in records}),
                "total_charges": len(records),
                "total_credits_charged": float(total_credits),
                "first_charge": min(dates) if dates else None,
                "last_charge": max(dates) if dates else None,
            },
            "entity_breakdown": sorted(breakdown.values(), key=lambda e: e["entity_id"]),
        }

    def _is_active(self, entity_type: str, entity_id: str) -> bool:
        if entity_type == EntityType.STORE.value:
            entity = self.entities.get_store(entity_id)
        else:
            entity = self.entities.get_domain(entity_id)
        return bool(entity and entity.active)
