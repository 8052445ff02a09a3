"""Execution chain: deterministic ordering and dependency checks for template properties."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from entity_block_store.models.template import PropertyDefinition

DEFAULT_EXECUTION_ORDER = 999


class DependencyError(ValueError):
    """Raised when a supplied property is missing one of its declared dependencies."""

    def __init__(self, key: str, dependency: str):
        self.key = key
        self.dependency = dependency
        super().__init__(
            f"Property '{key}' depends on '{dependency}', which must also be provided."
        )


@dataclass(frozen=True, slots=True)
class ChainItem:
    key: str
    order: int
    definition: PropertyDefinition


def build_chain(properties: Mapping[str, PropertyDefinition]) -> list[ChainItem]:
    """Return properties sorted by execution order, then key.

    Missing orders sort as ``DEFAULT_EXECUTION_ORDER``. The key tie-break makes
    the result independent of the mapping's iteration order.
    """
    items = [
        ChainItem(
            key=key,
            order=(
                definition.execution_order
                if definition.execution_order is not None
                else DEFAULT_EXECUTION_ORDER
            ),
            definition=definition,
        )
        for key, definition in properties.items()
    ]
    items.sort(key=lambda item: (item.order, item.key))
    return items


def is_empty(value: Any) -> bool:
    """``None``, empty strings and empty containers count as "not supplied".

    ``0`` and ``False`` are real values.
    """
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def find_unmet_dependency(
    properties: Mapping[str, PropertyDefinition],
    supplied: Mapping[str, Any],
) -> tuple[str, str] | None:
    """Return the first ``(key, dependency)`` pair that is not satisfied.

    Only one hop is checked: each supplied property needs its direct
    dependencies to be supplied too. Properties are visited in chain order so
    the reported pair is stable.
    """
    for item in build_chain(properties):
        if is_empty(supplied.get(item.key)):
            continue
        for dependency in item.definition.dependencies:
            if is_empty(supplied.get(dependency)):
                return item.key, dependency
    return None


def validate_dependencies(
    properties: Mapping[str, PropertyDefinition],
    supplied: Mapping[str, Any],
) -> bool:
    return find_unmet_dependency(properties, supplied) is None


def require_dependencies(
    properties: Mapping[str, PropertyDefinition],
    supplied: Mapping[str, Any],
) -> None:
    """Strict variant of :func:`validate_dependencies` raising ``DependencyError``."""
    unmet = find_unmet_dependency(properties, supplied)
    if unmet is not None:
        raise DependencyError(*unmet)


__all__ = [
    "ChainItem",
    "DEFAULT_EXECUTION_ORDER",
    "DependencyError",
    "build_chain",
    "find_unmet_dependency",
    "is_empty",
    "require_dependencies",
    "validate_dependencies",
]
