"""Pydantic models for stored entities and their parent relationship."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Stage(str, Enum):
    DRAFT = "draft"
    BACKLOG = "backlog"
    DOING = "doing"
    REVIEW = "review"
    COMPLETED = "completed"


class ObjectType(str, Enum):
    TASK = "task"
    PROJECT = "project"
    EPIC = "epic"
    RULE = "rule"


class RelatedEntry(BaseModel):
    """Single entry of the ``related`` array (``{"id": 5, "object": "project"}``)."""

    id: int
    object_type: ObjectType = Field(alias="object")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return {"id": self.id, "object": self.object_type.value}


class Entity(BaseModel):
    """Hydrated entity: the core row joined with its decoded blocks.

    ``blocks`` is keyed by property key and ordered by the template's
    execution chain.
    """

    id: int
    template_id: int
    stage: Stage = Stage.DRAFT
    parent_id: int | None = None
    related: tuple[RelatedEntry, ...] = ()
    dependencies: tuple[Any, ...] = ()
    blocks: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def title(self) -> str | None:
        value = self.blocks.get("Title")
        return value if isinstance(value, str) else None


__all__ = ["Entity", "ObjectType", "RelatedEntry", "Stage"]
