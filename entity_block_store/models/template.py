"""Pydantic models for templates and their property definitions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from entity_block_store.models.entity import ObjectType


class Cardinality(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"


class RelationshipSchemaEntry(BaseModel):
    """Describes a named relationship field on a template.

    ``allowed_types`` holds the template ids a parent may belong to. An empty
    set places no restriction on the parent's template.
    """

    key: str
    label: str = ""
    allowed_types: frozenset[int] = Field(default_factory=frozenset)
    cardinality: Cardinality = Cardinality.SINGLE
    required: bool = False
    order: int = 0

    model_config = ConfigDict(frozen=True)


class PropertyDefinition(BaseModel):
    """One named, typed field declared by a template."""

    id: int
    template_id: int
    key: str
    label: str | None = None
    type: str = "text"
    description: str = ""
    dependencies: tuple[str, ...] = ()
    execution_order: int | None = None
    fixed: bool = False
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(frozen=True, from_attributes=True)


class Template(BaseModel):
    """Schema definition for an entity type."""

    id: int
    name: str
    description: str = ""
    type: str = "object"
    related_schema: tuple[RelationshipSchemaEntry, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def object_type(self) -> ObjectType | None:
        """Entity-type tag derived from the template name (``Task`` -> ``task``)."""
        try:
            return ObjectType(self.name.strip().lower())
        except ValueError:
            return None

    def allowed_types_by_key(self) -> dict[str, frozenset[int]]:
        return {entry.key: entry.allowed_types for entry in self.related_schema}


__all__ = [
    "Cardinality",
    "PropertyDefinition",
    "RelationshipSchemaEntry",
    "Template",
]
