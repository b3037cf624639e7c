"""
Billing Reference Types

Every deduction can point at whatever triggered it through a polymorphic
(reference_id, reference_type) pair. The set of reference types is open:
feature code registers its own type together with a pydantic model that
describes the metadata it attaches. The deduction engine validates metadata
against that model before anything is written.
"""

from typing import Any, Dict, Optional, Type
import structlog

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidReference

logger = structlog.get_logger()


class ReferenceMetadata(BaseModel):
    """Base model for reference metadata. Extra keys are kept."""
    model_config = ConfigDict(extra="allow")


class StorePublishingMetadata(ReferenceMetadata):
    store_name: str
    charged_date: str


class CustomDomainMetadata(ReferenceMetadata):
    domain: str
    store_id: Optional[str] = None
    charged_date: str


class IntegrationRunMetadata(ReferenceMetadata):
    schedule_id: str
    integration: str = "akeneo"
    items_processed: int = Field(default=0, ge=0)


class TranslationMetadata(ReferenceMetadata):
    from_lang: str
    to_lang: str
    entity_type: str = "standard"
    item_count: int = Field(default=1, ge=1)


class ManualAdjustmentMetadata(ReferenceMetadata):
    performed_by: str
    reason: Optional[str] = None


BUILTIN_REFERENCE_TYPES: Dict[str, Type[ReferenceMetadata]] = {
    "store_publishing": StorePublishingMetadata,
    "custom_domain": CustomDomainMetadata,
    "akeneo_schedule": IntegrationRunMetadata,
    "ai_translation": TranslationMetadata,
    "manual_adjustment": ManualAdjustmentMetadata,
}


class ReferenceTypeRegistry:
    """Registry of known reference types and their metadata models."""

    def __init__(self, include_builtins: bool = True):
        self._types: Dict[str, Type[ReferenceMetadata]] = {}
        if include_builtins:
            self._types.update(BUILTIN_REFERENCE_TYPES)

    def register(self, reference_type: str, model: Type[ReferenceMetadata]) -> None:
        """Register (or replace) a reference type."""
        if not reference_type:
            raise InvalidReference("reference_type must be a non-empty string")
        self._types[reference_type] = model
        logger.info("reference_type_registered", reference_type=reference_type, model=model.__name__)

    def is_registered(self, reference_type: str) -> bool:
        return reference_type in self._types

    def registered_types(self) -> list:
        return sorted(self._types)

    def validate(
        self,
        reference_type: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Validate metadata for a reference type and return it normalized.

        Deductions without a reference type carry free-form metadata.
        """
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidReference("metadata must be a JSON object")

        if reference_type is None:
            return dict(metadata or {})

        model = self._types.get(reference_type)
        if model is None:
            raise InvalidReference(f"Unknown reference type: {reference_type}")

        try:
            parsed = model.model_validate(metadata or {})
        except ValidationError as e:
            raise InvalidReference(
                f"Invalid metadata for reference type {reference_type}: {e.errors(include_url=False)}"
            )
        return parsed.model_dump()
