"""Checklist parsing and the "all items done -> review" stage rule."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from entity_block_store.models.entity import Stage
from entity_block_store.repositories.entity_repository import EntitySnapshot

CHECKLIST_KEY = "Items"

_OPEN = "- [ ]"
_DONE = ("- [x]", "- [X]")

# Stages the rule never moves an entity out of.
_SETTLED = frozenset({Stage.REVIEW, Stage.COMPLETED})


@dataclass(frozen=True, slots=True)
class ChecklistProgress:
    total: int
    completed: int

    @property
    def all_done(self) -> bool:
        return self.total > 0 and self.completed == self.total


def parse_checklist(value: Any) -> ChecklistProgress:
    """Count ``- [ ]`` / ``- [x]`` lines; leading whitespace is ignored."""
    if isinstance(value, (list, tuple)):
        lines = [str(item) for item in value]
    elif isinstance(value, str):
        lines = value.splitlines()
    else:
        return ChecklistProgress(total=0, completed=0)

    total = completed = 0
    for line in lines:
        stripped = line.strip()
        if stripped.startswith(_DONE):
            total += 1
            completed += 1
        elif stripped.startswith(_OPEN):
            total += 1
    return ChecklistProgress(total=total, completed=completed)


def review_transition(snapshot: EntitySnapshot) -> Stage | None:
    """Post-condition moving an entity to review once its checklist is complete."""
    if CHECKLIST_KEY not in snapshot.changed_keys:
        return None
    if snapshot.stage in _SETTLED:
        return None
    if parse_checklist(snapshot.blocks.get(CHECKLIST_KEY)).all_done:
        return Stage.REVIEW
    return None


__all__ = ["CHECKLIST_KEY", "ChecklistProgress", "parse_checklist", "review_transition"]
