"""Entity create/update orchestration."""

from .entity_service import EntityService, EntityServiceError
from .factory import create_entity_service

__all__ = ["EntityService", "EntityServiceError", "create_entity_service"]
