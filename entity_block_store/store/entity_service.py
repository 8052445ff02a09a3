"""Create/update orchestration: schema, validation, persistence and result shaping."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from entity_block_store.models.entity import Entity, Stage
from entity_block_store.models.template import PropertyDefinition, Template
from entity_block_store.relationships.validator import (
    NO_PARENT,
    NormalizedRelated,
    RelationshipError,
    ResolvedParent,
    ensure_acyclic,
    synchronize,
)
from entity_block_store.repositories.entity_repository import (
    BlockWrite,
    DuplicateBlockError,
    EntityNotFoundError,
    EntityPatch,
    EntityRepository,
    PersistenceError,
    RepositoryError,
    UnknownPropertyError,
    UnknownTemplateError,
    is_transient,
)
from entity_block_store.schema.chain import DependencyError, build_chain, is_empty, require_dependencies
from entity_block_store.schema.registry import SchemaLoadError, SchemaRegistry
from entity_block_store.schema.values import PropertyValueError, check_value
from entity_block_store.store.checklist import review_transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Argument keys handled by the service itself rather than stored as blocks.
RESERVED_ARGS = frozenset({"id", "template_id", "stage", "parent_id", "related", "dependencies"})

VALIDATION = "validation"
NOT_FOUND = "not_found"
PERSISTENCE = "persistence"
NO_CHANGES = "no_changes"


class EntityServiceError(RuntimeError):
    """Raised for requests the service rejects before touching the store."""

    def __init__(self, message: str, kind: str = VALIDATION):
        self.kind = kind
        super().__init__(message)


class EntityService:
    """Use-case layer over the entity repository and schema registry.

    ``create``, ``update`` and ``get`` never raise; failures come back as
    ``{"success": False, "error": ..., "error_kind": ...}``.
    """

    def __init__(
        self,
        entities: EntityRepository,
        registry: SchemaRegistry,
        *,
        retry_attempts: int = 2,
        default_user: str = "system",
    ):
        """Internal constructor; prefer ``create_entity_service`` for public use."""
        self._entities = entities
        self._registry = registry
        self._retry_attempts = max(0, retry_attempts)
        self._default_user = default_user

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    # ------------------------------------------------------------------ Queries
    def get(self, entity_id: Any) -> dict[str, Any]:
        """Return the full normalised entity, blocks in execution-chain order."""
        try:
            entity = self._entities.get_entity(_require_id(entity_id))
        except EntityServiceError as exc:
            return _failure(exc, exc.kind)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load entity %s", entity_id)
            return _failure(exc, PERSISTENCE)
        if entity is None:
            return _failure(f"Object {entity_id} not found.", NOT_FOUND)
        return {"success": True, **entity_payload(entity)}

    def list(
        self,
        *,
        template_id: int | None = None,
        stage: Stage | str | None = None,
        parent_id: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        entities = self._entities.list_entities(
            template_id=template_id,
            stage=_parse_stage(stage) if stage is not None else None,
            parent_id=parent_id,
            limit=limit,
        )
        return [entity_payload(entity) for entity in entities]

    def children(self, parent_id: int) -> list[dict[str, Any]]:
        return [entity_payload(entity) for entity in self._entities.list_children(parent_id)]

    # ----------------------------------------------------------- Mutating ops
    def create(
        self,
        template_id: int,
        args: Mapping[str, Any],
        *,
        selected_parent_id: int | None = None,
        user: str | None = None,
    ) -> dict[str, Any]:
        """Create an entity of ``template_id`` from ``args``.

        ``selected_parent_id`` is the caller's current selection (for example
        the project open in a UI); it is used only when ``args`` names no
        parent and is dropped silently when it is not a valid parent.
        """
        return self._guard(
            lambda: self._create(template_id, args, selected_parent_id, user or self._default_user)
        )

    def update(self, args: Mapping[str, Any], *, user: str | None = None) -> dict[str, Any]:
        """Apply a partial update; ``args["id"]`` selects the entity."""
        entity_id = args.get("id")
        result = self._guard(lambda: self._update(args, user or self._default_user))
        if not result["success"]:
            result.setdefault("id", entity_id)
        return result

    # ----------------------------------------------------------------- Helpers
    def _create(
        self,
        template_id: int,
        args: Mapping[str, Any],
        selected_parent_id: int | None,
        user: str,
    ) -> dict[str, Any]:
        template, properties = self._load_schema(template_id)
        values = _dynamic_values(args, properties)
        stage = _parse_stage(args.get("stage")) if args.get("stage") is not None else Stage.DRAFT

        require_dependencies(properties, values)
        _check_values(properties, values)

        allowed = template.allowed_types_by_key() if template is not None else None
        if args.get("related") is not None or args.get("parent_id") is not None:
            relation = synchronize(args.get("parent_id"), args.get("related"), self._resolve, allowed)
        else:
            relation = self._selected_parent(selected_parent_id, allowed)

        entity_id = self._with_retries(
            lambda: self._entities.create_entity(
                template_id,
                stage=stage,
                relation=relation,
                blocks=_block_writes(properties, values),
                dependencies=_dependencies(args.get("dependencies")),
                user=user,
            )
        )
        entity = self._entities.get_entity(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Object {entity_id} vanished after create.")

        logger.info("Created %s %s", _type_label(template), entity_id)
        return {
            "success": True,
            **entity.blocks,
            "id": entity.id,
            "template_id": entity.template_id,
            "stage": entity.stage.value,
            "parent_id": entity.parent_id,
            "related": [entry.to_json() for entry in entity.related],
        }

    def _update(self, args: Mapping[str, Any], user: str) -> dict[str, Any]:
        entity_id = _require_id(args.get("id"))
        ref = self._entities.get_ref(entity_id)
        if ref is None:
            raise EntityNotFoundError(f"Object {entity_id} not found.")

        expected_template = args.get("template_id")
        if expected_template is not None and expected_template != ref.template_id:
            try:
                expected = self._registry.get_template(expected_template)
            except SchemaLoadError:
                logger.warning("Template %s unavailable while checking object %s", expected_template, entity_id)
                raise EntityServiceError(
                    f"Object {entity_id} does not use template {expected_template}."
                ) from None
            if expected is None:
                raise UnknownTemplateError(f"Template {expected_template} does not exist.")
            raise EntityServiceError(f"Object {entity_id} is not a {_type_label(expected)}.")

        template, properties = self._load_schema(ref.template_id)
        # None leaves a block untouched; empty strings and containers clear it.
        values = {
            key: value
            for key, value in _dynamic_values(args, properties).items()
            if value is not None
        }
        _check_values(properties, values)

        stage = _parse_stage(args["stage"]) if args.get("stage") is not None else None

        relation: NormalizedRelated | None = None
        if "related" in args or "parent_id" in args:
            allowed = template.allowed_types_by_key() if template is not None else None
            relation = synchronize(args.get("parent_id"), args.get("related"), self._resolve, allowed)
            ensure_acyclic(entity_id, relation, self._resolve)

        dependencies = None
        if args.get("dependencies") is not None:
            dependencies = _dependencies(args["dependencies"])

        patch = EntityPatch(
            stage=stage,
            relation=relation,
            blocks=_block_writes(properties, values, keep_empty=True),
            dependencies=dependencies,
        )
        if patch.is_empty():
            raise EntityServiceError("No changes provided.", NO_CHANGES)

        # An explicit stage in the same request takes precedence over the checklist rule.
        post_conditions = () if stage is not None else (review_transition,)
        updated = self._with_retries(
            lambda: self._entities.update_entity(
                entity_id, patch, user=user, post_conditions=post_conditions
            )
        )
        if not updated:
            raise EntityNotFoundError(f"Object {entity_id} not found.")

        entity = self._entities.get_entity(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Object {entity_id} not found.")
        return {
            "success": True,
            "id": entity.id,
            "template_id": entity.template_id,
            "stage": entity.stage.value,
            "parent_id": entity.parent_id,
            "related": [entry.to_json() for entry in entity.related],
            "blocks": dict(entity.blocks),
        }

    def _load_schema(self, template_id: int) -> tuple[Template | None, dict[str, PropertyDefinition]]:
        """Fetch the template and its properties, degrading to no properties on load errors."""
        try:
            template = self._registry.get_template(template_id)
        except SchemaLoadError:
            logger.warning("Template %s unavailable; continuing without its schema", template_id, exc_info=True)
            return None, {}
        if template is None:
            raise UnknownTemplateError(f"Template {template_id} does not exist.")

        try:
            properties = self._registry.load_properties(template_id)
        except SchemaLoadError:
            logger.warning(
                "Properties for template %s unavailable; treating it as having none",
                template_id,
                exc_info=True,
            )
            properties = {}
        return template, properties

    def _selected_parent(
        self,
        selected_parent_id: int | None,
        allowed: Mapping[str, Any] | None,
    ) -> NormalizedRelated:
        if selected_parent_id is None:
            return NO_PARENT
        try:
            return synchronize(selected_parent_id, None, self._resolve, allowed)
        except RelationshipError as exc:
            logger.info("Ignoring selected parent %s: %s", selected_parent_id, exc)
            return NO_PARENT

    def _resolve(self, entity_id: int) -> ResolvedParent | None:
        ref = self._entities.get_ref(entity_id)
        if ref is None:
            return None
        try:
            template = self._registry.get_template(ref.template_id)
        except SchemaLoadError:
            logger.warning("Template %s unavailable; parent %s has no known type", ref.template_id, entity_id)
            template = None
        return ResolvedParent(
            id=ref.id,
            template_id=ref.template_id,
            object_type=template.object_type if template is not None else None,
            parent_id=ref.parent_id,
        )

    def _with_retries(self, operation: Callable[[], T]) -> T:
        """Re-run a whole unit of work after transient connectivity failures."""
        attempt = 0
        while True:
            try:
                return operation()
            except (PersistenceError, SQLAlchemyError) as exc:
                cause = exc.__cause__ if isinstance(exc, PersistenceError) else exc
                if attempt >= self._retry_attempts or not is_transient(cause):
                    raise
                attempt += 1
                logger.warning(
                    "Transient database error, retrying (%d/%d): %s",
                    attempt,
                    self._retry_attempts,
                    exc,
                )

    def _guard(self, operation: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        try:
            return operation()
        except EntityServiceError as exc:
            return _failure(exc, exc.kind)
        except (RelationshipError, DependencyError, PropertyValueError, DuplicateBlockError) as exc:
            return _failure(exc, VALIDATION)
        except (EntityNotFoundError, UnknownTemplateError, UnknownPropertyError) as exc:
            return _failure(exc, NOT_FOUND)
        except (RepositoryError, SchemaLoadError, SQLAlchemyError) as exc:
            logger.exception("Entity store operation failed")
            return _failure(exc, PERSISTENCE)


def entity_payload(entity: Entity) -> dict[str, Any]:
    return {
        "id": entity.id,
        "template_id": entity.template_id,
        "stage": entity.stage.value,
        "parent_id": entity.parent_id,
        "related": [entry.to_json() for entry in entity.related],
        "dependencies": list(entity.dependencies),
        "blocks": dict(entity.blocks),
        "created_by": entity.created_by,
        "updated_by": entity.updated_by,
        "created_at": entity.created_at.isoformat() if entity.created_at else None,
        "updated_at": entity.updated_at.isoformat() if entity.updated_at else None,
    }


def _failure(error: Exception | str, kind: str) -> dict[str, Any]:
    result: dict[str, Any] = {"success": False, "error": str(error), "error_kind": kind}
    if isinstance(error, Exception) and error.__cause__ is not None:
        result["cause"] = repr(error.__cause__)
    return result


def _require_id(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise EntityServiceError("A valid numeric id (>= 1) is required.")
    return value


def _parse_stage(value: Any) -> Stage:
    try:
        return Stage(value)
    except ValueError:
        valid = ", ".join(stage.value for stage in Stage)
        raise EntityServiceError(f"Invalid stage '{value}'. Must be one of: {valid}.") from None


def _dynamic_values(
    args: Mapping[str, Any],
    properties: Mapping[str, PropertyDefinition],
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in args.items():
        if key in RESERVED_ARGS:
            continue
        if key not in properties:
            logger.debug("Ignoring argument %r: not a property of this template", key)
            continue
        values[key] = value
    return values


def _check_values(properties: Mapping[str, PropertyDefinition], values: Mapping[str, Any]) -> None:
    for key, value in values.items():
        if not is_empty(value):
            check_value(properties[key], value)


def _block_writes(
    properties: Mapping[str, PropertyDefinition],
    values: Mapping[str, Any],
    *,
    keep_empty: bool = False,
) -> tuple[BlockWrite, ...]:
    return tuple(
        BlockWrite(property_id=item.definition.id, key=item.key, value=values[item.key], position=index)
        for index, item in enumerate(build_chain(properties))
        if item.key in values and (keep_empty or not is_empty(values[item.key]))
    )


def _dependencies(value: Any) -> tuple[Any, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise EntityServiceError("'dependencies' must be an array.")
    return tuple(value)


def _type_label(template: Template | None) -> str:
    if template is None:
        return "object"
    object_type = template.object_type
    return object_type.value if object_type is not None else template.name


__all__ = [
    "EntityService",
    "EntityServiceError",
    "NOT_FOUND",
    "NO_CHANGES",
    "PERSISTENCE",
    "RESERVED_ARGS",
    "VALIDATION",
    "entity_payload",
]
