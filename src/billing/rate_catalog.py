"""
Rate Catalog

Maps service keys to a per-unit credit cost and a billing cadence. Every
lookup reads storage, so a rate change is effective for the very next
deduction.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid
import structlog

from core.credits import to_credits
from core.errors import DuplicateService, InvalidAmount, InvalidServiceDefinition, ServiceNotFound
from persistence.database import Database, Transaction
from persistence.models import ServiceCost
from persistence.repository import ServiceCostRepository

logger = structlog.get_logger()

BILLING_TYPES = ("per_day", "per_use", "per_month", "per_hour", "per_item", "per_mb", "flat_rate")

SERVICE_CATEGORIES = (
    "store_operations",
    "plugin_management",
    "ai_services",
    "data_migration",
    "storage",
    "akeneo_integration",
    "other",
)

DEFAULT_SERVICES: List[Dict[str, Any]] = [
    {
        "service_key": "store_daily_publishing",
        "service_name": "Store Publishing",
        "service_category": "store_operations",
        "description": "Daily charge for keeping a store published",
        "cost_per_unit": "1.0000",
        "billing_type": "per_day",
        "display_order": 1,
    },
    {
        "service_key": "custom_domain",
        "service_name": "Custom Domain",
        "service_category": "store_operations",
        "description": "Daily charge for an active custom domain",
        "cost_per_unit": "0.5000",
        "billing_type": "per_day",
        "display_order": 2,
    },
    {
        "service_key": "akeneo_schedule_run",
        "service_name": "Akeneo Scheduled Import",
        "service_category": "akeneo_integration",
        "description": "Charge per scheduled integration run",
        "cost_per_unit": "0.1000",
        "billing_type": "per_use",
        "display_order": 1,
    },
    {
        "service_key": "ai_translation",
        "service_name": "AI Translation",
        "service_category": "ai_services",
        "description": "Translation of one standard item",
        "cost_per_unit": "0.1000",
        "billing_type": "per_use",
        "display_order": 1,
    },
    {
        "service_key": "ai_translation_cms_block",
        "service_name": "AI Translation (CMS Block)",
        "service_category": "ai_services",
        "description": "Translation of one CMS block",
        "cost_per_unit": "0.2000",
        "billing_type": "per_use",
        "display_order": 2,
    },
    {
        "service_key": "ai_translation_cms_page",
        "service_name": "AI Translation (CMS Page)",
        "service_category": "ai_services",
        "description": "Translation of one CMS page",
        "cost_per_unit": "0.5000",
        "billing_type": "per_use",
        "display_order": 3,
    },
    {
        "service_key": "pdf_template_translation",
        "service_name": "PDF Template Translation",
        "service_category": "ai_services",
        "description": "Translation of one PDF template",
        "cost_per_unit": "0.1000",
        "billing_type": "per_use",
        "display_order": 4,
    },
]


def _validate_cost(cost_per_unit: Any) -> Decimal:
    cost = to_credits(cost_per_unit)
    if cost < 0:
        raise InvalidAmount(f"cost_per_unit must be >= 0, got {cost}")
    return cost


def _validate_billing_type(billing_type: str) -> str:
    if billing_type not in BILLING_TYPES:
        raise InvalidServiceDefinition(f"Invalid billing_type: {billing_type}. Must be one of {', '.join(BILLING_TYPES)}")
    return billing_type


class RateCatalog:
    """Lookup and administration of service credit costs."""

    def __init__(self, db: Database):
        self.db = db
        self.services = ServiceCostRepository(db)

    def get_service(self, service_key: str, tx: Optional[Transaction] = None) -> ServiceCost:
        """Active catalog entry for a key. Raises ServiceNotFound otherwise."""
        service = self.services.get_by_key(service_key, tx)
        if service is None:
            raise ServiceNotFound(service_key)
        if not service.is_active:
            raise ServiceNotFound(service_key, inactive=True)
        return service

    def get_cost_by_key(self, service_key: str, tx: Optional[Transaction] = None) -> Decimal:
        return self.get_service(service_key, tx).cost_per_unit

    def calculate_cost(self, service_key: str, units: Any = 1, tx: Optional[Transaction] = None) -> Decimal:
        """cost_per_unit * units, rounded half-up to 4 decimal places."""
        try:
            quantity = Decimal(str(units)) if isinstance(units, float) else Decimal(units)
        except (ArithmeticError, TypeError, ValueError):
            raise InvalidAmount(f"units must be a number, got {units!r}")
        if not quantity.is_finite() or quantity < 0:
            raise InvalidAmount(f"units must be >= 0, got {units}")

        cost = self.get_cost_by_key(service_key, tx)
        try:
            total = cost * quantity
        except ArithmeticError:
            raise InvalidAmount(f"units out of range: {units}")
        return to_credits(total)

    def update_cost(self, service_key: str, cost_per_unit: Any, updated_by: Optional[str] = None) -> ServiceCost:
        cost = _validate_cost(cost_per_unit)
        if not self.services.update_fields(service_key, {"cost_per_unit": cost}, updated_by):
            raise ServiceNotFound(service_key)
        logger.info("service_cost_updated", service_key=service_key, cost_per_unit=str(cost), updated_by=updated_by)
        return self.services.get_by_key(service_key)

    def toggle_active(self, service_key: str, updated_by: Optional[str] = None) -> ServiceCost:
        with self.db.transaction() as tx:
            if not self.services.flip_active(service_key, updated_by, tx):
                raise ServiceNotFound(service_key)
            service = self.services.get_by_key(service_key, tx)
        logger.info("service_toggled", service_key=service_key, is_active=service.is_active, updated_by=updated_by)
        return service

    def create_service(
        self,
        service_key: str,
        service_name: str,
        cost_per_unit: Any,
        billing_type: str,
        service_category: str = "other",
        description: Optional[str] = None,
        is_active: bool = True,
        is_visible: bool = True,
        display_order: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        updated_by: Optional[str] = None,
    ) -> ServiceCost:
        """Add a catalog entry. Raises DuplicateService if the key is taken."""
        if service_category not in SERVICE_CATEGORIES:
            raise InvalidServiceDefinition(f"Invalid service_category: {service_category}")

        service = ServiceCost(
            id=str(uuid.uuid4()),
            service_key=service_key,
            service_name=service_name,
            service_category=service_category,
            description=description,
            cost_per_unit=_validate_cost(cost_per_unit),
            billing_type=_validate_billing_type(billing_type),
            is_active=is_active,
            is_visible=is_visible,
            display_order=display_order,
            metadata=metadata or {},
            updated_by=updated_by,
        )
        if not self.services.create(service):
            raise DuplicateService(service_key)

        logger.info("service_created", service_key=service_key, cost_per_unit=str(service.cost_per_unit))
        return service

    def update_service(self, service_key: str, updated_by: Optional[str] = None, **fields: Any) -> ServiceCost:
        unknown = set(fields) - set(ServiceCostRepository.UPDATABLE_FIELDS)
        if unknown:
            raise InvalidServiceDefinition(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "cost_per_unit" in fields:
            fields["cost_per_unit"] = _validate_cost(fields["cost_per_unit"])
        if "billing_type" in fields:
            _validate_billing_type(fields["billing_type"])
        if "service_category" in fields and fields["service_category"] not in SERVICE_CATEGORIES:
            raise InvalidServiceDefinition(f"Invalid service_category: {fields['service_category']}")

        if not self.services.update_fields(service_key, fields, updated_by):
            raise ServiceNotFound(service_key)
        logger.info("service_updated", service_key=service_key, fields=sorted(fields), updated_by=updated_by)
        return self.services.get_by_key(service_key)

    def delete_service(self, service_key: str) -> None:
        if not self.services.delete(service_key):
            raise ServiceNotFound(service_key)
        logger.info("service_deleted", service_key=service_key)

    def list_services(
        self,
        category: Optional[str] = None,
        active_only: bool = False,
        visible_only: bool = False,
    ) -> List[ServiceCost]:
        return self.services.list_services(category, active_only, visible_only)

    def services_by_category(self, active_only: bool = True) -> Dict[str, List[ServiceCost]]:
        grouped: Dict[str, List[ServiceCost]] = {}
        for service in self.services.list_services(active_only=active_only, visible_only=True):
            grouped.setdefault(service.service_category, []).append(service)
        return grouped

    def seed_defaults(self) -> int:
        """Insert the default catalog. Existing keys are left untouched."""
        created = 0
        for entry in DEFAULT_SERVICES:
            service = ServiceCost(
                id=str(uuid.uuid4()),
                service_key=entry["service_key"],
                service_name=entry["service_name"],
                service_category=entry["service_category"],
                description=entry["description"],
                cost_per_unit=to_credits(entry["cost_per_unit"]),
                billing_type=entry["billing_type"],
                display_order=entry["display_order"],
                updated_by="system",
            )
            if self.services.create(service):
                created += 1

        if created:
            logger.info("rate_catalog_seeded", created=created)
        return created
