"""Cached access to template and property definitions."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from entity_block_store.models.template import PropertyDefinition, Template
from entity_block_store.repositories.entity_repository import RepositoryError
from entity_block_store.repositories.template_repository import TemplateRepository
from entity_block_store.schema.chain import build_chain

logger = logging.getLogger(__name__)

# Cache key for the superset of every template's properties.
ALL_TEMPLATES = None


class SchemaLoadError(RuntimeError):
    """Raised when property definitions cannot be read from storage."""


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    loaded_at: float


class SchemaRegistry:
    """Loads template property definitions and caches them per template id.

    ``ttl_seconds`` bounds how long an entry is served without a reload; the
    default keeps entries until :meth:`invalidate` is called.
    """

    def __init__(self, templates: TemplateRepository, *, ttl_seconds: float | None = None):
        self._templates = templates
        self._ttl = ttl_seconds if ttl_seconds else None
        self._lock = threading.Lock()
        self._properties: dict[int | None, _CacheEntry] = {}
        self._template_rows: dict[int, _CacheEntry] = {}

    def load_properties(self, template_id: int | None = None) -> dict[str, PropertyDefinition]:
        """Return ``key -> definition`` in execution-chain order.

        Without ``template_id`` the superset of all templates is returned;
        when two templates share a key the lowest template id wins. A template
        without properties yields an empty mapping.
        """
        cached = self._lookup(self._properties, template_id)
        if cached is not None:
            return dict(cached)

        try:
            rows = self._templates.list_properties(template_id)
        except (SQLAlchemyError, RepositoryError) as exc:
            raise SchemaLoadError(
                f"Failed to load properties for template {template_id}."
                if template_id is not None
                else "Failed to load property definitions."
            ) from exc

        by_key: dict[str, PropertyDefinition] = {}
        for definition in rows:
            by_key.setdefault(definition.key, definition)
        ordered = {item.key: item.definition for item in build_chain(by_key)}

        self._store(self._properties, template_id, ordered)
        logger.debug("Loaded %d properties for template %s", len(ordered), template_id)
        return dict(ordered)

    def get_template(self, template_id: int) -> Template | None:
        cached = self._lookup(self._template_rows, template_id)
        if cached is not None:
            return cached
        try:
            template = self._templates.get_template(template_id)
        except (SQLAlchemyError, RepositoryError) as exc:
            raise SchemaLoadError(f"Failed to load template {template_id}.") from exc
        if template is not None:
            self._store(self._template_rows, template_id, template)
        return template

    def invalidate(self, template_id: int | None = None) -> None:
        """Drop cached entries for ``template_id`` (and the superset), or everything."""
        with self._lock:
            if template_id is None:
                self._properties.clear()
                self._template_rows.clear()
            else:
                self._properties.pop(template_id, None)
                self._properties.pop(ALL_TEMPLATES, None)
                self._template_rows.pop(template_id, None)
        logger.debug("Schema cache invalidated for template %s", template_id)

    def _lookup(self, cache: dict, key: int | None) -> Any:
        with self._lock:
            entry = cache.get(key)
            if entry is None:
                return None
            if self._ttl is not None and time.monotonic() - entry.loaded_at > self._ttl:
                del cache[key]
                return None
            return entry.value

    def _store(self, cache: dict, key: int | None, value: Any) -> None:
        with self._lock:
            cache[key] = _CacheEntry(value=value, loaded_at=time.monotonic())


__all__ = ["SchemaLoadError", "SchemaRegistry"]
