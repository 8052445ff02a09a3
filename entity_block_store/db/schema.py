"""SQLAlchemy declarative schema for the entity block store."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql.sqltypes import JSON

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for SQLAlchemy declarative mappings."""


class AuditMixin:
    created_by: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    updated_by: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class DbTemplate(AuditMixin, Base):
    """ORM mapping for a template (schema definition for one entity type)."""

    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="object", nullable=False)
    related_schema: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON_TYPE, default=list, nullable=False
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON_TYPE, default=dict, nullable=False
    )


class DbProperty(AuditMixin, Base):
    """ORM mapping for a property declared by a template."""

    __tablename__ = "properties"
    __table_args__ = (
        UniqueConstraint("template_id", "key", name="uq_properties_template_key"),
        Index("ix_properties_template", "template_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False
    )
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    type: Mapped[str] = mapped_column(String(32), default="text", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    dependencies: Mapped[list[str]] = mapped_column(JSON_TYPE, default=list, nullable=False)
    execution_order: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fixed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class DbEntity(AuditMixin, Base):
    """ORM mapping for the core entity row (task, project, epic, rule)."""

    __tablename__ = "entities"
    __table_args__ = (
        Index("ix_entities_template", "template_id"),
        Index("ix_entities_parent", "parent_id"),
        Index("ix_entities_stage", "stage"),
        # Postgres-specific GIN index for containment lookups (ignored by SQLite)
        Index("ix_entities_related_gin", "related", postgresql_using="gin"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False
    )
    stage: Mapped[str] = mapped_column(String(16), default="draft", nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("entities.id", ondelete="SET NULL"), nullable=True
    )
    related: Mapped[list[dict[str, Any]]] = mapped_column(JSON_TYPE, default=list, nullable=False)
    dependencies: Mapped[list[Any]] = mapped_column(JSON_TYPE, default=list, nullable=False)


class DbBlock(AuditMixin, Base):
    """ORM mapping for one property value of one entity."""

    __tablename__ = "blocks"
    __table_args__ = (
        UniqueConstraint("entity_id", "property_id", name="uq_blocks_entity_property"),
        Index("ix_blocks_property", "property_id"),
        Index("ix_blocks_position", "entity_id", "position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    property_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("properties.id", ondelete="RESTRICT"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


def create_all(engine: Engine) -> None:
    """Create database tables for the schema."""
    Base.metadata.create_all(engine, checkfirst=True)


def drop_all(engine: Engine) -> None:
    """Drop every table owned by the schema."""
    Base.metadata.drop_all(engine, checkfirst=True)


__all__ = [
    "Base",
    "DbBlock",
    "DbEntity",
    "DbProperty",
    "DbTemplate",
    "JSON_TYPE",
    "create_all",
    "drop_all",
]
