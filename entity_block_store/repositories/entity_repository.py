"""SQLAlchemy-backed repository for entities and their property blocks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from sqlalchemy import func, select, type_coerce
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from entity_block_store.db.schema import DbBlock, DbEntity, DbProperty, DbTemplate
from entity_block_store.models.entity import Entity, RelatedEntry, Stage
from entity_block_store.models.template import PropertyDefinition
from entity_block_store.relationships.validator import NO_PARENT, NormalizedRelated
from entity_block_store.schema.chain import build_chain, is_empty
from entity_block_store.schema.values import decode_value, encode_value

logger = logging.getLogger(__name__)


class RepositoryError(RuntimeError):
    """Base class for repository-level errors."""


class EntityNotFoundError(RepositoryError):
    """Raised when an entity cannot be found for a requested operation."""


class UnknownTemplateError(RepositoryError):
    """Raised when a template id does not exist."""


class UnknownPropertyError(RepositoryError):
    """Raised when a property id does not exist or belongs to another template."""


class DuplicateBlockError(RepositoryError):
    """Raised when one unit of work writes the same (entity, property) pair twice."""


class PersistenceError(RepositoryError):
    """Wraps unexpected database failures; the original error is ``__cause__``."""

    @property
    def transient(self) -> bool:
        return is_transient(self.__cause__)


def is_transient(exc: BaseException | None) -> bool:
    """True for connectivity failures that are worth retrying at the transaction boundary."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, OperationalError)


@dataclass(frozen=True, slots=True)
class BlockWrite:
    """Value destined for one (entity, property) block."""

    property_id: int
    key: str
    value: Any
    position: int = 0


@dataclass(frozen=True, slots=True)
class EntityPatch:
    stage: Stage | None = None
    relation: NormalizedRelated | None = None
    blocks: tuple[BlockWrite, ...] = ()
    dependencies: tuple[Any, ...] | None = None

    def is_empty(self) -> bool:
        return (
            self.stage is None
            and self.relation is None
            and not self.blocks
            and self.dependencies is None
        )


@dataclass(frozen=True, slots=True)
class EntitySnapshot:
    """State of an entity inside an update's transaction, after the writes."""

    id: int
    template_id: int
    stage: Stage
    blocks: Mapping[str, Any] = field(default_factory=dict)
    changed_keys: frozenset[str] = frozenset()


PostCondition = Callable[[EntitySnapshot], "Stage | None"]


@dataclass(frozen=True, slots=True)
class EntityRef:
    """Core columns of an entity without its blocks."""

    id: int
    template_id: int
    parent_id: int | None
    stage: Stage


class EntityRepository:
    """Repository that persists and hydrates entities and their blocks.

    Every public mutation runs in a single session and commits once; any
    failure rolls the whole unit of work back.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------ Queries
    def get_entity(self, entity_id: int) -> Entity | None:
        """Fetch an entity with its blocks decoded and in execution-chain order."""
        with self._session_factory() as session:
            row = session.get(DbEntity, entity_id)
            if row is None:
                return None
            blocks = self._load_blocks(session, [row.id])
            return self._to_model(row, blocks.get(row.id, []))

    def get_ref(self, entity_id: int) -> EntityRef | None:
        with self._session_factory() as session:
            row = session.get(DbEntity, entity_id)
            if row is None:
                return None
            return EntityRef(
                id=row.id,
                template_id=row.template_id,
                parent_id=row.parent_id,
                stage=Stage(row.stage),
            )

    def list_entities(
        self,
        *,
        template_id: int | None = None,
        stage: Stage | str | None = None,
        parent_id: int | None = None,
        limit: int | None = None,
    ) -> list[Entity]:
        """Return entities matching the filters, ordered by id."""
        with self._session_factory() as session:
            query = select(DbEntity)
            if template_id is not None:
                query = query.where(DbEntity.template_id == template_id)
            if stage is not None:
                query = query.where(DbEntity.stage == Stage(stage).value)
            if parent_id is not None:
                query = query.where(DbEntity.parent_id == parent_id)
            query = query.order_by(DbEntity.id)
            if limit is not None:
                query = query.limit(limit)
            return self._hydrate(session, session.scalars(query).all())

    def list_children(self, parent_id: int) -> list[Entity]:
        """Return the direct children of ``parent_id``.

        PostgreSQL answers through the GIN-indexed ``related`` containment
        check; other dialects use the synchronised ``parent_id`` column.
        """
        with self._session_factory() as session:
            if session.get_bind().dialect.name == "postgresql":
                condition = type_coerce(DbEntity.related, JSONB).contains([{"id": parent_id}])
            else:
                condition = DbEntity.parent_id == parent_id
            rows = session.scalars(select(DbEntity).where(condition).order_by(DbEntity.id)).all()
            return self._hydrate(session, rows)

    def count_blocks(self, entity_id: int, property_id: int | None = None) -> int:
        with self._session_factory() as session:
            query = select(func.count()).select_from(DbBlock).where(DbBlock.entity_id == entity_id)
            if property_id is not None:
                query = query.where(DbBlock.property_id == property_id)
            return session.scalar(query) or 0

    # ----------------------------------------------------------- Mutating ops
    def create_entity(
        self,
        template_id: int,
        *,
        stage: Stage = Stage.DRAFT,
        relation: NormalizedRelated = NO_PARENT,
        blocks: Sequence[BlockWrite] = (),
        dependencies: Iterable[Any] = (),
        user: str = "system",
    ) -> int:
        """Insert the entity row and one block per non-empty value, atomically."""
        writes = [write for write in blocks if not is_empty(write.value)]
        _ensure_unique(writes)

        with self._session_factory() as session:
            try:
                if session.get(DbTemplate, template_id) is None:
                    raise UnknownTemplateError(f"Template {template_id} does not exist.")
                self._require_properties(session, template_id, writes)

                row = DbEntity(
                    template_id=template_id,
                    stage=Stage(stage).value,
                    parent_id=relation.parent_id,
                    related=relation.related_json(),
                    dependencies=list(dependencies),
                    created_by=user,
                    updated_by=user,
                )
                session.add(row)
                session.flush()

                for write in writes:
                    session.add(
                        DbBlock(
                            entity_id=row.id,
                            property_id=write.property_id,
                            content=encode_value(write.value),
                            position=write.position,
                            created_by=user,
                            updated_by=user,
                        )
                    )
                session.flush()
                entity_id = row.id
                session.commit()
            except RepositoryError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise _translate(exc, f"Failed to create entity for template {template_id}.") from exc

        logger.debug("Created entity %s (template %s, %d blocks)", entity_id, template_id, len(writes))
        return entity_id

    def update_entity(
        self,
        entity_id: int,
        patch: EntityPatch,
        *,
        user: str = "system",
        post_conditions: Sequence[PostCondition] = (),
    ) -> bool:
        """Apply ``patch`` in one transaction.

        Returns False when the entity does not exist or the patch is empty.
        ``post_conditions`` are evaluated after the writes, inside the same
        transaction; a returned stage is applied before commit.
        """
        if patch.is_empty():
            return False
        _ensure_unique(patch.blocks)

        with self._session_factory() as session:
            try:
                row = session.get(DbEntity, entity_id)
                if row is None:
                    return False
                self._require_properties(session, row.template_id, patch.blocks)

                if patch.stage is not None:
                    row.stage = Stage(patch.stage).value
                if patch.relation is not None:
                    row.parent_id = patch.relation.parent_id
                    row.related = patch.relation.related_json()
                if patch.dependencies is not None:
                    row.dependencies = list(patch.dependencies)
                row.updated_by = user
                row.updated_at = func.now()

                self._upsert_blocks(session, entity_id, patch.blocks, user)

                if post_conditions:
                    self._apply_post_conditions(session, row, patch, post_conditions)

                session.commit()
            except RepositoryError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                raise _translate(exc, f"Failed to update entity {entity_id}.") from exc

        return True

    # ----------------------------------------------------------------- Helpers
    def _upsert_blocks(
        self,
        session: Session,
        entity_id: int,
        writes: Sequence[BlockWrite],
        user: str,
    ) -> None:
        """Insert or update blocks keyed by (entity_id, property_id)."""
        if not writes:
            return

        payloads = [
            {
                "entity_id": entity_id,
                "property_id": write.property_id,
                "content": encode_value(write.value),
                "position": write.position,
                "created_by": user,
                "updated_by": user,
            }
            for write in writes
        ]
        dialect = session.get_bind().dialect.name

        if dialect in {"postgresql", "sqlite"}:
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(DbBlock).values(payloads)
            stmt = stmt.on_conflict_do_update(
                index_elements=[DbBlock.entity_id, DbBlock.property_id],
                set_={
                    "content": stmt.excluded.content,
                    "updated_by": stmt.excluded.updated_by,
                    "updated_at": func.now(),
                },
            )
            session.execute(stmt)
            return

        for payload in payloads:
            existing = session.scalars(
                select(DbBlock)
                .where(
                    DbBlock.entity_id == entity_id,
                    DbBlock.property_id == payload["property_id"],
                )
                .with_for_update()
            ).one_or_none()
            if existing is None:
                session.add(DbBlock(**payload))
            else:
                existing.content = payload["content"]
                existing.updated_by = user
        session.flush()

    def _apply_post_conditions(
        self,
        session: Session,
        row: DbEntity,
        patch: EntityPatch,
        post_conditions: Sequence[PostCondition],
    ) -> None:
        session.flush()
        current = self._load_blocks(session, [row.id]).get(row.id, [])
        snapshot = EntitySnapshot(
            id=row.id,
            template_id=row.template_id,
            stage=Stage(row.stage),
            blocks={definition.key: decode_value(content) for definition, content in current},
            changed_keys=frozenset(write.key for write in patch.blocks),
        )
        for condition in post_conditions:
            new_stage = condition(snapshot)
            if new_stage is not None and new_stage is not snapshot.stage:
                logger.info(
                    "Entity %s stage %s -> %s after update",
                    row.id,
                    snapshot.stage.value,
                    new_stage.value,
                )
                row.stage = new_stage.value
                snapshot = replace(snapshot, stage=new_stage)

    @staticmethod
    def _require_properties(
        session: Session,
        template_id: int,
        writes: Sequence[BlockWrite],
    ) -> None:
        property_ids = {write.property_id for write in writes}
        if not property_ids:
            return
        rows = session.execute(
            select(DbProperty.id, DbProperty.template_id).where(DbProperty.id.in_(property_ids))
        ).all()
        owners = {property_id: owner for property_id, owner in rows}
        missing = sorted(property_ids - set(owners))
        if missing:
            raise UnknownPropertyError(f"Property id(s) {missing} do not exist.")
        foreign = sorted(pid for pid, owner in owners.items() if owner != template_id)
        if foreign:
            raise UnknownPropertyError(
                f"Property id(s) {foreign} do not belong to template {template_id}."
            )

    @staticmethod
    def _load_blocks(
        session: Session,
        entity_ids: Sequence[int],
    ) -> dict[int, list[tuple[PropertyDefinition, str]]]:
        """Return ``entity_id -> [(definition, content)]`` in execution-chain order."""
        if not entity_ids:
            return {}
        rows = session.execute(
            select(DbBlock.entity_id, DbBlock.content, DbProperty)
            .join(DbProperty, DbBlock.property_id == DbProperty.id)
            .where(DbBlock.entity_id.in_(list(entity_ids)))
            .order_by(DbBlock.entity_id, DbBlock.position)
        ).all()

        grouped: dict[int, dict[str, tuple[PropertyDefinition, str]]] = {}
        for entity_id, content, prop in rows:
            definition = PropertyDefinition.model_validate(prop)
            grouped.setdefault(entity_id, {})[definition.key] = (definition, content)

        ordered: dict[int, list[tuple[PropertyDefinition, str]]] = {}
        for entity_id, by_key in grouped.items():
            chain = build_chain({key: definition for key, (definition, _) in by_key.items()})
            ordered[entity_id] = [by_key[item.key] for item in chain]
        return ordered

    def _hydrate(self, session: Session, rows: Sequence[DbEntity]) -> list[Entity]:
        blocks = self._load_blocks(session, [row.id for row in rows])
        return [self._to_model(row, blocks.get(row.id, [])) for row in rows]

    @staticmethod
    def _to_model(record: DbEntity, blocks: Sequence[tuple[PropertyDefinition, str]]) -> Entity:
        return Entity(
            id=record.id,
            template_id=record.template_id,
            stage=Stage(record.stage),
            parent_id=record.parent_id,
            related=tuple(RelatedEntry.model_validate(entry) for entry in (record.related or [])),
            dependencies=tuple(record.dependencies or ()),
            blocks={definition.key: decode_value(content) for definition, content in blocks},
            created_by=record.created_by,
            updated_by=record.updated_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def _ensure_unique(writes: Sequence[BlockWrite]) -> None:
    seen: set[int] = set()
    for write in writes:
        if write.property_id in seen:
            raise DuplicateBlockError(
                f"Property '{write.key}' ({write.property_id}) is written twice in one operation."
            )
        seen.add(write.property_id)


def _translate(exc: SQLAlchemyError, message: str) -> RepositoryError:
    if isinstance(exc, IntegrityError) and "uq_blocks_entity_property" in str(exc.orig):
        return DuplicateBlockError(message)
    return PersistenceError(message)


__all__ = [
    "BlockWrite",
    "DuplicateBlockError",
    "EntityNotFoundError",
    "EntityPatch",
    "EntityRef",
    "EntityRepository",
    "EntitySnapshot",
    "PersistenceError",
    "PostCondition",
    "RepositoryError",
    "UnknownPropertyError",
    "UnknownTemplateError",
    "is_transient",
]
