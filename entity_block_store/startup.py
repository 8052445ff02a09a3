"""Startup helpers for bootstrapping the default templates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from entity_block_store.models.template import Cardinality, RelationshipSchemaEntry, Template
from entity_block_store.repositories.entity_repository import UnknownTemplateError
from entity_block_store.repositories.template_repository import TemplateRepository

logger = logging.getLogger(__name__)

TASK_TEMPLATE_ID = 1
PROJECT_TEMPLATE_ID = 2
EPIC_TEMPLATE_ID = 3
RULE_TEMPLATE_ID = 4


@dataclass(frozen=True, slots=True)
class PropertySeed:
    key: str
    value_type: str = "text"
    description: str = ""
    execution_order: int | None = None
    dependencies: tuple[str, ...] = ()
    fixed: bool = False


@dataclass(frozen=True, slots=True)
class TemplateSeed:
    id: int
    name: str
    description: str
    parents: dict[str, tuple[int, ...]] = field(default_factory=dict)
    properties: tuple[PropertySeed, ...] = ()


_TITLE = PropertySeed("Title", description="Short name", execution_order=1, fixed=True)
_DESCRIPTION = PropertySeed("Description", description="Longer explanation", execution_order=2)

DEFAULT_TEMPLATES: tuple[TemplateSeed, ...] = (
    TemplateSeed(
        id=TASK_TEMPLATE_ID,
        name="Task",
        description="A unit of work",
        parents={
            "project": (PROJECT_TEMPLATE_ID,),
            "epic": (EPIC_TEMPLATE_ID,),
            "rule": (RULE_TEMPLATE_ID,),
        },
        properties=(
            _TITLE,
            _DESCRIPTION,
            PropertySeed("Summary", description="One-line outcome", execution_order=3),
            PropertySeed("Items", description="Checklist of '- [ ]' lines", execution_order=4),
        ),
    ),
    TemplateSeed(
        id=PROJECT_TEMPLATE_ID,
        name="Project",
        description="A body of related work",
        properties=(_TITLE, _DESCRIPTION),
    ),
    TemplateSeed(
        id=EPIC_TEMPLATE_ID,
        name="Epic",
        description="A large feature spanning several tasks",
        parents={"project": (PROJECT_TEMPLATE_ID,)},
        properties=(_TITLE, _DESCRIPTION),
    ),
    TemplateSeed(
        id=RULE_TEMPLATE_ID,
        name="Rule",
        description="A guideline tasks must follow",
        parents={"project": (PROJECT_TEMPLATE_ID,)},
        properties=(_TITLE, _DESCRIPTION),
    ),
)


def ensure_default_templates(
    templates: TemplateRepository,
    *,
    seeds: tuple[TemplateSeed, ...] = DEFAULT_TEMPLATES,
    user: str = "system",
) -> list[Template]:
    """Create any missing default template (and missing properties) and return all of them.

    Existing templates are matched by id and left untouched apart from
    properties they do not declare yet.
    """
    result: list[Template] = []
    for seed in seeds:
        template = templates.get_template(seed.id)
        if template is None:
            templates.create_template(
                seed.name,
                description=seed.description,
                related_schema=_relationship_schema(seed),
                template_id=seed.id,
                user=user,
            )
            logger.info("Seeded template %s (%s)", seed.id, seed.name)

        existing = {definition.key for definition in templates.list_properties(seed.id)}
        for prop in seed.properties:
            if prop.key in existing:
                continue
            templates.create_property(
                seed.id,
                prop.key,
                value_type=prop.value_type,
                description=prop.description,
                dependencies=prop.dependencies,
                execution_order=prop.execution_order,
                fixed=prop.fixed,
                user=user,
            )

        loaded = templates.get_template(seed.id)
        if loaded is None:
            raise UnknownTemplateError(f"Template {seed.id} ({seed.name}) is missing after seeding.")
        result.append(loaded)
    return result


def _relationship_schema(seed: TemplateSeed) -> list[RelationshipSchemaEntry]:
    return [
        RelationshipSchemaEntry(
            key=key,
            label=key.capitalize(),
            allowed_types=frozenset(template_ids),
            cardinality=Cardinality.SINGLE,
            order=index,
        )
        for index, (key, template_ids) in enumerate(seed.parents.items())
    ]


__all__ = [
    "DEFAULT_TEMPLATES",
    "EPIC_TEMPLATE_ID",
    "PROJECT_TEMPLATE_ID",
    "PropertySeed",
    "RULE_TEMPLATE_ID",
    "TASK_TEMPLATE_ID",
    "TemplateSeed",
    "ensure_default_templates",
]
