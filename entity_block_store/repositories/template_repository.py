"""SQLAlchemy-backed repository for templates and property definitions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from entity_block_store.db.schema import DbBlock, DbEntity, DbProperty, DbTemplate
from entity_block_store.models.template import (
    PropertyDefinition,
    RelationshipSchemaEntry,
    Template,
)
from entity_block_store.repositories.entity_repository import (
    PersistenceError,
    RepositoryError,
    UnknownPropertyError,
    UnknownTemplateError,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[int | None], None]

# Once blocks reference a property only these columns may still change.
MUTABLE_IN_USE_FIELDS = frozenset({"label", "description"})
PROPERTY_FIELDS = frozenset(
    {"key", "label", "type", "description", "dependencies", "execution_order", "fixed"}
)
TEMPLATE_FIELDS = frozenset({"name", "description", "type", "related_schema", "metadata"})


class TemplateInUseError(RepositoryError):
    """Raised when deleting a template that entities still reference."""


class PropertyInUseError(RepositoryError):
    """Raised when a property with stored blocks would be deleted or redefined."""


class FixedPropertyError(RepositoryError):
    """Raised when deleting a property flagged as fixed."""


class PropertyConflictError(RepositoryError):
    """Raised when a template already declares a property with the same key."""


class TemplateRepository:
    """Repository that persists templates and their properties.

    Listeners registered through :meth:`add_change_listener` are called with
    the affected template id after every committed mutation.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._listeners: list[ChangeListener] = []

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------- Templates
    def list_templates(self) -> list[Template]:
        with self._session_factory() as session:
            rows = session.scalars(select(DbTemplate).order_by(DbTemplate.id)).all()
            return [self._to_template(row) for row in rows]

    def get_template(self, template_id: int) -> Template | None:
        with self._session_factory() as session:
            row = session.get(DbTemplate, template_id)
            return self._to_template(row) if row is not None else None

    def create_template(
        self,
        name: str,
        *,
        description: str = "",
        type: str = "object",
        related_schema: Sequence[RelationshipSchemaEntry | dict[str, Any]] = (),
        metadata: dict[str, Any] | None = None,
        template_id: int | None = None,
        user: str = "system",
    ) -> int:
        """Insert a template and return its id (``template_id`` pins the id)."""
        row = DbTemplate(
            name=name,
            description=description,
            type=type,
            related_schema=_related_schema_payload(related_schema),
            metadata_json=dict(metadata or {}),
            created_by=user,
            updated_by=user,
        )
        if template_id is not None:
            row.id = template_id

        with self._session_factory() as session:
            try:
                session.add(row)
                session.flush()
                if template_id is not None:
                    _sync_id_sequence(session)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Failed to create template '{name}'.") from exc
            new_id = row.id

        self._notify(new_id)
        return new_id

    def update_template(self, template_id: int, *, user: str = "system", **changes: Any) -> bool:
        unknown = set(changes) - TEMPLATE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported template fields: {sorted(unknown)}")
        if not changes:
            return False

        with self._session_factory() as session:
            row = session.get(DbTemplate, template_id)
            if row is None:
                raise UnknownTemplateError(f"Template {template_id} does not exist.")
            for field, value in changes.items():
                if field == "related_schema":
                    row.related_schema = _related_schema_payload(value)
                elif field == "metadata":
                    row.metadata_json = dict(value or {})
                else:
                    setattr(row, field, value)
            row.updated_by = user
            try:
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Failed to update template {template_id}.") from exc

        self._notify(template_id)
        return True

    def delete_template(self, template_id: int) -> bool:
        """Delete a template and its properties; refused while entities use it."""
        with self._session_factory() as session:
            row = session.get(DbTemplate, template_id)
            if row is None:
                return False

            entity_count = session.scalar(
                select(func.count()).select_from(DbEntity).where(DbEntity.template_id == template_id)
            )
            if entity_count:
                raise TemplateInUseError(
                    f"Template {template_id} is used by {entity_count} entit"
                    f"{'y' if entity_count == 1 else 'ies'} and cannot be deleted."
                )

            try:
                session.query(DbProperty).filter(DbProperty.template_id == template_id).delete(
                    synchronize_session=False
                )
                session.delete(row)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(f"Failed to delete template {template_id}.") from exc

        self._notify(template_id)
        return True

    # ------------------------------------------------------------ Properties
    def list_properties(self, template_id: int | None = None) -> list[PropertyDefinition]:
        """Return properties ordered by template, execution order and key."""
        with self._session_factory() as session:
            query = select(DbProperty)
            if template_id is not None:
                query = query.where(DbProperty.template_id == template_id)
            query = query.order_by(DbProperty.template_id, DbProperty.execution_order, DbProperty.key)
            return [self._to_property(row) for row in session.scalars(query).all()]

    def get_property(self, property_id: int) -> PropertyDefinition | None:
        with self._session_factory() as session:
            row = session.get(DbProperty, property_id)
            return self._to_property(row) if row is not None else None

    def create_property(
        self,
        template_id: int,
        key: str,
        *,
        value_type: str = "text",
        description: str = "",
        label: str | None = None,
        dependencies: Iterable[str] = (),
        execution_order: int | None = None,
        fixed: bool = False,
        user: str = "system",
    ) -> int:
        if not key or not key.strip():
            raise ValueError("Property key cannot be empty.")

        with self._session_factory() as session:
            if session.get(DbTemplate, template_id) is None:
                raise UnknownTemplateError(f"Template {template_id} does not exist.")

            row = DbProperty(
                template_id=template_id,
                key=key,
                label=label,
                type=value_type,
                description=description,
                dependencies=list(dependencies),
                execution_order=execution_order,
                fixed=fixed,
                created_by=user,
                updated_by=user,
            )
            try:
                session.add(row)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise PropertyConflictError(
                    f"Template {template_id} already declares property '{key}'."
                ) from exc
            property_id = row.id

        logger.debug("Created property %s (%s) on template %s", property_id, key, template_id)
        self._notify(template_id)
        return property_id

    def update_property(self, property_id: int, *, user: str = "system", **changes: Any) -> bool:
        """Apply ``changes`` to a property; returns False when nothing changed."""
        unknown = set(changes) - PROPERTY_FIELDS
        if unknown:
            raise ValueError(f"Unsupported property fields: {sorted(unknown)}")

        with self._session_factory() as session:
            row = session.get(DbProperty, property_id)
            if row is None:
                raise UnknownPropertyError(f"Property {property_id} does not exist.")

            effective = {
                field: value
                for field, value in changes.items()
                if _normalise_field(field, value) != _normalise_field(field, getattr(row, field))
            }
            if not effective:
                return False

            restricted = set(effective) - MUTABLE_IN_USE_FIELDS
            if restricted and self._block_count(session, property_id):
                raise PropertyInUseError(
                    f"Property '{row.key}' has stored values; only label and description "
                    f"can change (attempted: {sorted(restricted)})."
                )

            for field, value in effective.items():
                setattr(row, field, list(value) if field == "dependencies" else value)
            row.updated_by = user
            template_id = row.template_id
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise PropertyConflictError(
                    f"Template {template_id} already declares property '{changes.get('key')}'."
                ) from exc

        self._notify(template_id)
        return True

    def delete_property(self, property_id: int) -> bool:
        with self._session_factory() as session:
            row = session.get(DbProperty, property_id)
            if row is None:
                return False
            if row.fixed:
                raise FixedPropertyError(f"Property '{row.key}' is fixed and cannot be deleted.")

            block_count = self._block_count(session, property_id)
            if block_count:
                raise PropertyInUseError(
                    f"Property '{row.key}' is used by {block_count} stored block(s) "
                    "and cannot be deleted."
                )

            template_id = row.template_id
            session.delete(row)
            session.commit()

        self._notify(template_id)
        return True

    # ---------------------------------------------------------------- Helpers
    def _notify(self, template_id: int | None) -> None:
        for listener in self._listeners:
            listener(template_id)

    @staticmethod
    def _block_count(session: Session, property_id: int) -> int:
        return session.scalar(
            select(func.count()).select_from(DbBlock).where(DbBlock.property_id == property_id)
        ) or 0

    @staticmethod
    def _to_template(record: DbTemplate) -> Template:
        return Template(
            id=record.id,
            name=record.name,
            description=record.description or "",
            type=record.type,
            related_schema=tuple(
                RelationshipSchemaEntry(**entry) for entry in (record.related_schema or [])
            ),
            metadata=record.metadata_json or {},
            created_by=record.created_by,
            updated_by=record.updated_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _to_property(record: DbProperty) -> PropertyDefinition:
        return PropertyDefinition(
            id=record.id,
            template_id=record.template_id,
            key=record.key,
            label=record.label,
            type=record.type,
            description=record.description or "",
            dependencies=tuple(record.dependencies or ()),
            execution_order=record.execution_order,
            fixed=bool(record.fixed),
            created_by=record.created_by,
            updated_by=record.updated_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def _related_schema_payload(
    entries: Sequence[RelationshipSchemaEntry | dict[str, Any]],
) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for entry in entries:
        model = entry if isinstance(entry, RelationshipSchemaEntry) else RelationshipSchemaEntry(**entry)
        data = model.model_dump(mode="json")
        data["allowed_types"] = sorted(model.allowed_types)
        payload.append(data)
    return payload


def _sync_id_sequence(session: Session) -> None:
    # Explicit ids bypass the serial sequence on PostgreSQL.
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(
        text(
            "SELECT setval(pg_get_serial_sequence('templates', 'id'), "
            "(SELECT MAX(id) FROM templates))"
        )
    )


def _normalise_field(field: str, value: Any) -> Any:
    if field == "dependencies":
        return list(value or [])
    return value


__all__ = [
    "FixedPropertyError",
    "PropertyConflictError",
    "PropertyInUseError",
    "TemplateInUseError",
    "TemplateRepository",
]
