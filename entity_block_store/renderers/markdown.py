"""Markdown rendering for hydrated entities."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from entity_block_store.models.entity import Entity
from entity_block_store.models.template import Template


@dataclass(slots=True)
class RenderOptions:
    include_empty: bool = False
    include_metadata: bool = False


@dataclass(slots=True)
class EntityMarkdownRenderer:
    """Render an entity as a heading, a status line and one section per block.

    Blocks are emitted in the entity's stored order, which is the template's
    execution chain.
    """

    heading_level: int = 1

    def render(
        self,
        entity: Entity,
        *,
        template: Template | None = None,
        options: RenderOptions | None = None,
    ) -> str:
        opts = options or RenderOptions()
        label = template.name if template is not None else "Object"
        title = entity.title or f"{label} {entity.id}"
        marker = "#" * max(1, self.heading_level)

        status = [f"**ID:** {entity.id}", f"**Stage:** {entity.stage.value}"]
        if entity.related:
            parent = entity.related[0]
            status.append(f"**Parent:** {parent.object_type.value} {parent.id}")
        elif entity.parent_id is not None:
            status.append(f"**Parent:** {entity.parent_id}")

        sections = [f"{marker} {title}", " | ".join(status)]
        for key, value in entity.blocks.items():
            if key == "Title":
                continue
            body = _format_value(value)
            if not body and not opts.include_empty:
                continue
            sections.append(f"{marker}# {key}\n\n{body}".rstrip())

        if opts.include_metadata:
            meta = [f"> template_id: {entity.template_id}"]
            if entity.dependencies:
                meta.append(f"> dependencies: {json.dumps(list(entity.dependencies))}")
            if entity.updated_by:
                meta.append(f"> updated_by: {entity.updated_by}")
            sections.append("\n".join(meta))

        return _join_sections(sections)


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (list, tuple)):
        return "\n".join(f"- {_format_value(item)}" for item in value)
    if isinstance(value, dict):
        return "```json\n" + json.dumps(value, indent=2, ensure_ascii=False) + "\n```"
    return str(value)


def _join_sections(sections: list[str]) -> str:
    return "\n\n".join(section for section in sections if section)


__all__ = ["EntityMarkdownRenderer", "RenderOptions"]
