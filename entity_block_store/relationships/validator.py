"""Validation and synchronisation of the single-parent relationship.

An entity's parent is exposed through two fields: the legacy scalar
``parent_id`` and the ``related`` array (at most one ``{"id", "object"}``
entry). Internally both are projections of one :class:`NormalizedRelated`
value, so they can never disagree once normalised.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from entity_block_store.models.entity import ObjectType, RelatedEntry

logger = logging.getLogger(__name__)


class RelationshipError(ValueError):
    """Base class for relationship validation failures."""


class TooManyParents(RelationshipError):
    def __init__(self, count: int):
        self.count = count
        super().__init__(
            f"An entity can have at most one parent; received {count} related entries."
        )


class MalformedEntry(RelationshipError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Malformed related entry: {detail}")


class InvalidObjectType(RelationshipError):
    def __init__(self, tag: str):
        self.tag = tag
        valid = ", ".join(member.value for member in ObjectType)
        super().__init__(f'Invalid object type "{tag}". Must be one of: {valid}.')


class ParentNotFound(RelationshipError):
    def __init__(self, entity_id: int):
        self.entity_id = entity_id
        super().__init__(f"Referenced parent object with ID {entity_id} does not exist.")


class TypeMismatch(RelationshipError):
    def __init__(self, declared: str, actual: str):
        self.declared = declared
        self.actual = actual
        super().__init__(
            f'Related entry object type "{declared}" does not match '
            f'parent\'s actual type "{actual}".'
        )


class DisallowedParentType(RelationshipError):
    def __init__(self, object_type: str, allowed: Iterable[int]):
        self.object_type = object_type
        self.allowed = frozenset(allowed)
        super().__init__(
            f'A parent of type "{object_type}" is not allowed here '
            f"(allowed template ids: {sorted(self.allowed)})."
        )


class CyclicRelationship(RelationshipError):
    def __init__(self, entity_id: int, parent_id: int):
        self.entity_id = entity_id
        self.parent_id = parent_id
        super().__init__(
            f"Object {parent_id} cannot become the parent of {entity_id}: "
            "it would create a cycle."
        )


@dataclass(frozen=True, slots=True)
class ResolvedParent:
    """What the validator needs to know about a referenced entity."""

    id: int
    template_id: int
    object_type: ObjectType | None
    parent_id: int | None = None


ResolveEntity = Callable[[int], "ResolvedParent | None"]


@dataclass(frozen=True, slots=True)
class NormalizedRelated:
    parent: RelatedEntry | None = None

    @property
    def parent_id(self) -> int | None:
        return self.parent.id if self.parent is not None else None

    @property
    def related(self) -> tuple[RelatedEntry, ...]:
        return (self.parent,) if self.parent is not None else ()

    def related_json(self) -> list[dict[str, Any]]:
        return [entry.to_json() for entry in self.related]


NO_PARENT = NormalizedRelated()


def validate_related(
    related: Sequence[Mapping[str, Any] | RelatedEntry] | None,
    allowed_types_by_key: Mapping[str, Iterable[int]] | None,
    resolve_entity: ResolveEntity,
) -> NormalizedRelated:
    """Validate a ``related`` array and return its normalised form.

    Checks run in a fixed order and stop at the first failure: cardinality,
    entry shape, object type domain, parent existence, declared vs actual
    type, then the template's allowed parent types.
    """
    if related is None:
        return NO_PARENT
    if isinstance(related, (str, bytes)) or not isinstance(related, Sequence):
        raise MalformedEntry("'related' must be an array.")
    if len(related) > 1:
        raise TooManyParents(len(related))
    if not related:
        return NO_PARENT

    entity_id, tag = _entry_shape(related[0])

    try:
        declared = ObjectType(tag)
    except ValueError:
        raise InvalidObjectType(tag) from None

    resolved = resolve_entity(entity_id)
    if resolved is None:
        raise ParentNotFound(entity_id)

    if resolved.object_type is not declared:
        actual = resolved.object_type.value if resolved.object_type is not None else "unknown"
        raise TypeMismatch(declared.value, actual)

    allowed = _allowed_template_ids(allowed_types_by_key)
    if allowed and resolved.template_id not in allowed:
        raise DisallowedParentType(declared.value, allowed)

    return NormalizedRelated(RelatedEntry(id=entity_id, object=declared))


def synchronize(
    parent_id: Any,
    related: Sequence[Mapping[str, Any] | RelatedEntry] | None,
    resolve_entity: ResolveEntity,
    allowed_types_by_key: Mapping[str, Iterable[int]] | None = None,
) -> NormalizedRelated:
    """Reconcile a caller's ``parent_id`` and ``related`` into one value.

    ``related`` wins whenever it is supplied; ``parent_id`` alone is expanded
    into a single related entry typed after the resolved parent; neither
    yields the "no parent" state.
    """
    if related is not None:
        normalized = validate_related(related, allowed_types_by_key, resolve_entity)
        if parent_id is not None and parent_id != normalized.parent_id:
            logger.info(
                "parent_id %s disagrees with related array; using related parent %s",
                parent_id,
                normalized.parent_id,
            )
        return normalized

    if parent_id is None:
        return NO_PARENT

    if not _is_positive_int(parent_id):
        raise MalformedEntry("parent_id must be a positive integer.")

    resolved = resolve_entity(parent_id)
    if resolved is None:
        raise ParentNotFound(parent_id)
    if resolved.object_type is None:
        raise InvalidObjectType("unknown")

    return validate_related(
        [{"id": parent_id, "object": resolved.object_type.value}],
        allowed_types_by_key,
        resolve_entity,
    )


def ensure_acyclic(
    entity_id: int,
    normalized: NormalizedRelated,
    resolve_entity: ResolveEntity,
) -> None:
    """Refuse parents that are the entity itself or one of its descendants."""
    current = normalized.parent_id
    seen: set[int] = set()
    while current is not None and current not in seen:
        if current == entity_id:
            raise CyclicRelationship(entity_id, normalized.parent_id)
        seen.add(current)
        resolved = resolve_entity(current)
        current = resolved.parent_id if resolved is not None else None


def _entry_shape(entry: Mapping[str, Any] | RelatedEntry) -> tuple[int, str]:
    if isinstance(entry, RelatedEntry):
        return entry.id, entry.object_type.value
    if not isinstance(entry, Mapping):
        raise MalformedEntry("each entry must be an object with 'id' and 'object'.")

    entity_id = entry.get("id")
    tag = entry.get("object", entry.get("object_type"))
    if isinstance(tag, ObjectType):
        tag = tag.value
    if not _is_positive_int(entity_id):
        raise MalformedEntry("entry must have a valid numeric id (>= 1).")
    if not isinstance(tag, str) or not tag:
        raise MalformedEntry("entry must have a valid object type string.")
    return entity_id, tag


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _allowed_template_ids(allowed_types_by_key: Mapping[str, Iterable[int]] | None) -> frozenset[int]:
    if not allowed_types_by_key:
        return frozenset()
    allowed: set[int] = set()
    for template_ids in allowed_types_by_key.values():
        allowed.update(template_ids)
    return frozenset(allowed)


__all__ = [
    "CyclicRelationship",
    "DisallowedParentType",
    "InvalidObjectType",
    "MalformedEntry",
    "NO_PARENT",
    "NormalizedRelated",
    "ParentNotFound",
    "RelationshipError",
    "ResolveEntity",
    "ResolvedParent",
    "TooManyParents",
    "TypeMismatch",
    "ensure_acyclic",
    "synchronize",
    "validate_related",
]
