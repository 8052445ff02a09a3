"""Factory helpers for constructing the entity service."""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from entity_block_store.config import Settings
from entity_block_store.repositories.entity_repository import EntityRepository
from entity_block_store.repositories.template_repository import TemplateRepository
from entity_block_store.schema.registry import SchemaRegistry

from .entity_service import EntityService


def create_entity_service(
    session_factory: sessionmaker[Session],
    settings: Settings | None = None,
    *,
    templates: TemplateRepository | None = None,
) -> EntityService:
    """Build an EntityService whose schema cache follows template changes."""
    settings = settings or Settings()
    templates = templates or TemplateRepository(session_factory)
    registry = SchemaRegistry(templates, ttl_seconds=settings.schema_cache_ttl)
    templates.add_change_listener(registry.invalidate)
    return EntityService(
        EntityRepository(session_factory),
        registry,
        retry_attempts=settings.retry_attempts,
        default_user=settings.default_user,
    )


__all__ = ["create_entity_service"]
