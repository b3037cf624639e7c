"""
Entity Directory

The fleet scheduler does not own stores or domains. It talks to them
through this interface: enumerate billable entities, resolve the paying
account, and deactivate an entity whose owner can no longer pay.
"""

from abc import ABC, abstractmethod
from typing import List
import structlog

from core.errors import EntityNotFound
from persistence.database import Database
from persistence.models import BillableEntity, EntityType
from persistence.repository import EntityRepository

logger = structlog.get_logger()


class EntityDirectory(ABC):
    """Access to billable entities owned by other parts of the platform."""

    @abstractmethod
    def list_billable_stores(self) -> List[BillableEntity]:
        """Published stores in a deterministic order."""

    @abstractmethod
    def list_billable_domains(self) -> List[BillableEntity]:
        """Active, verified custom domains in a deterministic order."""

    @abstractmethod
    def resolve_owner(self, entity: BillableEntity) -> str:
        """Account that pays for the entity. Raises EntityNotFound."""

    @abstractmethod
    def deactivate(self, entity: BillableEntity, reason: str) -> None:
        """Unpublish a store or disable a domain."""


class SqlEntityDirectory(EntityDirectory):
    """Directory backed by the accounts, stores and custom_domains tables."""

    def __init__(self, db: Database):
        self.entities = EntityRepository(db)

    def list_billable_stores(self) -> List[BillableEntity]:
        return self.entities.list_published_stores()

    def list_billable_domains(self) -> List[BillableEntity]:
        return self.entities.list_billable_domains()

    def resolve_owner(self, entity: BillableEntity) -> str:
        owner = entity.owner_account_id
        if not owner:
            detail = "store has no owner"
            if entity.entity_type == EntityType.DOMAIN:
                detail = f"domain store {entity.store_id} not found or has no owner"
            raise EntityNotFound(entity.entity_type.value, entity.entity_id, detail)
        if not self.entities.account_exists(owner):
            raise EntityNotFound("account", owner, f"owner of {entity.entity_type.value} {entity.entity_id}")
        return owner

    def deactivate(self, entity: BillableEntity, reason: str) -> None:
        if entity.entity_type == EntityType.STORE:
            found = self.entities.deactivate_store(entity.entity_id, reason)
        else:
            found = self.entities.deactivate_domain(entity.entity_id, reason)
        if not found:
            raise EntityNotFound(entity.entity_type.value, entity.entity_id)
        logger.info(
            "entity_deactivated",
            entity_type=entity.entity_type.value,
            entity_id=entity.entity_id,
            reason=reason,
        )
