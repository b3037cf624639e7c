"""
Fleet Billing Scheduler

Charges every billable entity once per billing day (UTC):
published stores at the store daily rate, active verified custom domains at
the domain daily rate.

Per entity the daily_charges row (entity_id, charged_date) is inserted
first, inside the same transaction as the deduction. It acts as the
idempotency gate: if the insert hits an existing row the entity was already
charged today and is skipped. If the owner cannot pay, the transaction is
rolled back (so the gate row disappears) and the entity is deactivated.

A run is safe to repeat at any time; a second run on the same day charges
nothing.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import uuid
import structlog

from core.config import LedgerConfig
from core.credits import ZERO
from core.errors import FleetBillingError, ServiceNotFound, StorageUnavailable
from persistence.database import Database
from persistence.models import BillableEntity, DailyCharge, EntityType
from persistence.repository import DailyChargeRepository
from .deduction import DeductionEngine, DeductionResult
from .directory import EntityDirectory

logger = structlog.get_logger()

CHARGED = "charged"
SKIPPED = "skipped"
DEACTIVATED = "deactivated"
ERROR = "error"

REFERENCE_TYPES = {
    EntityType.STORE: "store_publishing",
    EntityType.DOMAIN: "custom_domain",
}


def _empty_stats() -> Dict[str, Any]:
    return {
        "processed": 0,
        "successful": 0,
        "failed": 0,
        "skipped": 0,
        "deactivated": 0,
        "errors": [],
        "details": [],
    }


class FleetBillingScheduler:
    """
    Daily batch billing over the whole fleet.

    Usage:
        scheduler = FleetBillingScheduler(db, engine, SqlEntityDirectory(db), config)
        summary = scheduler.run_billing_cycle()
    """

    def __init__(
        self,
        db: Database,
        engine: DeductionEngine,
        directory: EntityDirectory,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.engine = engine
        self.directory = directory
        self.config = config or LedgerConfig()
        self.charges = DailyChargeRepository(db)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_billing_cycle(self, charged_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Run one billing cycle.

        Returns the summary. Raises FleetBillingError when the fleet is not
        empty and no entity was charged or found already charged, and lets
        StorageUnavailable abort the run.
        """
        now = self._clock()
        billing_day = (charged_date or now.date()).isoformat()

        stores = self.directory.list_billable_stores()
        domains = self.directory.list_billable_domains()
        logger.info("fleet_billing_started", charged_date=billing_day, stores=len(stores), domains=len(domains))

        store_cost = self._period_cost(
            self.config.store_daily_service_key, self.config.default_store_daily_cost
        )
        domain_cost = self._period_cost(
            self.config.domain_daily_service_key, self.config.default_domain_daily_cost
        )

        summary: Dict[str, Any] = {
            "stores": _empty_stats(),
            "domains": _empty_stats(),
            "charged_date": billing_day,
            "timestamp": now.isoformat(),
        }

        for store in stores:
            self._process(store, store_cost, billing_day, summary["stores"])
        for domain in domains:
            self._process(domain, domain_cost, billing_day, summary["domains"])

        total = len(stores) + len(domains)
        settled = sum(
            summary[k]["successful"] + summary[k]["skipped"] for k in ("stores", "domains")
        )

        logger.info(
            "fleet_billing_complete",
            charged_date=billing_day,
            stores_successful=summary["stores"]["successful"],
            stores_failed=summary["stores"]["failed"],
            stores_skipped=summary["stores"]["skipped"],
            domains_successful=summary["domains"]["successful"],
            domains_failed=summary["domains"]["failed"],
            domains_skipped=summary["domains"]["skipped"],
        )

        if total and settled == 0:
            logger.error("fleet_billing_failed", charged_date=billing_day, entities=total)
            raise FleetBillingError(
                f"Billing cycle for {billing_day} charged none of {total} entities",
                summary,
            )
        return summary

    def _period_cost(self, service_key: str, default: Decimal) -> Decimal:
        try:
            return self.engine.catalog.get_cost_by_key(service_key)
        except ServiceNotFound as e:
            logger.warning(
                "fleet_rate_fallback",
                service_key=service_key,
                default_cost=str(default),
                reason=str(e),
            )
            return default

    def _process(
        self,
        entity: BillableEntity,
        cost: Decimal,
        charged_date: str,
        stats: Dict[str, Any],
    ) -> None:
        label = entity.entity_type.value
        stats["processed"] += 1
        detail: Dict[str, Any] = {
            f"{label}_id": entity.entity_id,
            f"{label}_name": entity.name,
            "credits_charged": 0.0,
            f"{label}_deactivated": False,
        }
        stats["details"].append(detail)

        try:
            account_id = self.directory.resolve_owner(entity)
            detail["account_id"] = account_id
            status, result = self._charge(entity, account_id, cost, charged_date)

            if status == SKIPPED:
                stats["skipped"] += 1
                detail["status"] = SKIPPED
                logger.info("fleet_entity_already_charged", entity_type=label, entity_id=entity.entity_id, charged_date=charged_date)
                return

            if status == CHARGED:
                stats["successful"] += 1
                detail["status"] = CHARGED
                detail["credits_charged"] = float(cost)
                if result is not None:
                    detail["remaining_balance"] = float(result.remaining_balance)
                return

            stats["failed"] += 1
            detail["status"] = DEACTIVATED
            detail["required"] = float(result.required)
            detail["available"] = float(result.available)
            reason = (
                f"Insufficient credits for daily {label} charge. "
                f"Required: {result.required}, Available: {result.available}"
            )
            self.directory.deactivate(entity, reason)
            stats["deactivated"] += 1
            detail[f"{label}_deactivated"] = True
            logger.warning(
                "fleet_entity_deactivated",
                entity_type=label,
                entity_id=entity.entity_id,
                account_id=account_id,
                required=str(result.required),
                available=str(result.available),
            )

        except StorageUnavailable:
            raise
        except Exception as e:
            if detail.get("status") != DEACTIVATED:
                stats["failed"] += 1
                detail["status"] = ERROR
            detail["error"] = str(e)
            stats["errors"].append({
                f"{label}_id": entity.entity_id,
                f"{label}_name": entity.name,
                "code": getattr(e, "code", type(e).__name__),
                "error": str(e),
            })
            logger.error(
                "fleet_entity_failed",
                entity_type=label,
                entity_id=entity.entity_id,
                error=str(e),
            )

    def _charge(
        self,
        entity: BillableEntity,
        account_id: str,
        cost: Decimal,
        charged_date: str,
    ) -> tuple:
        """Gate, deduct and finalize in one transaction."""
        charge = DailyCharge(
            id=str(uuid.uuid4()),
            entity_id=entity.entity_id,
            entity_type=entity.entity_type.value,
            entity_name=entity.name,
            account_id=account_id,
            charged_date=charged_date,
            credits_charged=cost,
        )

        with self.db.transaction() as tx:
            if not self.charges.try_reserve(charge, tx):
                return SKIPPED, None

            if cost <= ZERO:
                # Free tier: record the day without touching the balance
                return CHARGED, None

            result: DeductionResult = self.engine.deduct(
                account_id,
                cost,
                self._description(entity, charged_date),
                metadata=self._metadata(entity, charged_date),
                reference_id=entity.entity_id,
                reference_type=REFERENCE_TYPES[entity.entity_type],
                entity_id=entity.entity_id,
                usage_type=REFERENCE_TYPES[entity.entity_type],
                tx=tx,
            )
            if not result.succeeded:
                tx.set_rollback_only()
                return DEACTIVATED, result

            self.charges.finalize(
                charge.id, result.balance_before, result.remaining_balance, result.usage_id, tx
            )
        return CHARGED, result

    @staticmethod
    def _description(entity: BillableEntity, charged_date: str) -> str:
        if entity.entity_type == EntityType.STORE:
            return f"Daily publishing charge for store {entity.name} ({charged_date})"
        return f"Daily custom domain charge for {entity.name} ({charged_date})"

    @staticmethod
    def _metadata(entity: BillableEntity, charged_date: str) -> Dict[str, Any]:
        if entity.entity_type == EntityType.STORE:
            return {"store_name": entity.name, "charged_date": charged_date}
        return {"domain": entity.name, "store_id": entity.store_id, "charged_date": charged_date}
