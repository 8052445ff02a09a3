from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from entity_block_store.models.entity import ObjectType
from entity_block_store.models.template import Cardinality
from entity_block_store.relationships.validator import NO_PARENT
from entity_block_store.repositories.entity_repository import BlockWrite, PersistenceError, UnknownTemplateError
from entity_block_store.repositories.template_repository import (
    FixedPropertyError,
    PropertyConflictError,
    PropertyInUseError,
    TemplateInUseError,
)
from entity_block_store.startup import ensure_default_templates


def test_default_templates_are_seeded_once(template_repository):
    first = ensure_default_templates(template_repository)
    second = ensure_default_templates(template_repository)

    assert [t.id for t in first] == [1, 2, 3, 4]
    assert [t.object_type for t in second] == [
        ObjectType.TASK,
        ObjectType.PROJECT,
        ObjectType.EPIC,
        ObjectType.RULE,
    ]
    assert len(template_repository.list_templates()) == 4
    assert len(template_repository.list_properties(1)) == 4


def test_default_relationship_schema(default_templates, template_repository):
    task = template_repository.get_template(1)

    assert task.allowed_types_by_key() == {
        "project": frozenset({2}),
        "epic": frozenset({3}),
        "rule": frozenset({4}),
    }
    assert all(entry.cardinality is Cardinality.SINGLE for entry in task.related_schema)


def test_auto_ids_continue_after_seeded_templates(default_templates, template_repository):
    template_id = template_repository.create_template("Workflow", type="workflow")

    assert template_id == 5


def test_create_property_rejects_unknown_template_and_duplicates(template_repository, default_templates):
    with pytest.raises(UnknownTemplateError):
        template_repository.create_property(99, "Title")
    with pytest.raises(PropertyConflictError):
        template_repository.create_property(1, "Title")
    with pytest.raises(ValueError):
        template_repository.create_property(1, "  ")


def test_list_properties_orders_by_template_then_execution_order(template_repository, default_templates):
    keys = [(p.template_id, p.key) for p in template_repository.list_properties()]

    assert keys[:4] == [(1, "Title"), (1, "Description"), (1, "Summary"), (1, "Items")]
    assert keys == sorted(keys, key=lambda pair: pair[0])


def test_update_property_reports_no_change(template_repository, default_templates):
    title = next(p for p in template_repository.list_properties(2) if p.key == "Title")

    assert template_repository.update_property(title.id, key="Title") is False
    assert template_repository.update_property(title.id, label="Name") is True
    assert template_repository.get_property(title.id).label == "Name"


def test_in_use_property_only_allows_label_and_description(
    template_repository, entity_repository, default_templates
):
    summary = next(p for p in template_repository.list_properties(1) if p.key == "Summary")
    entity_repository.create_entity(
        1, relation=NO_PARENT, blocks=[BlockWrite(summary.id, "Summary", "done")]
    )

    assert template_repository.update_property(summary.id, description="Outcome") is True
    with pytest.raises(PropertyInUseError):
        template_repository.update_property(summary.id, type="number")
    with pytest.raises(PropertyInUseError):
        template_repository.delete_property(summary.id)


def test_fixed_property_cannot_be_deleted(template_repository, default_templates):
    title = next(p for p in template_repository.list_properties(1) if p.key == "Title")

    with pytest.raises(FixedPropertyError):
        template_repository.delete_property(title.id)


def test_unused_property_can_be_deleted(template_repository, default_templates):
    prop_id = template_repository.create_property(2, "Budget", value_type="number")

    assert template_repository.delete_property(prop_id) is True
    assert template_repository.get_property(prop_id) is None
    assert template_repository.delete_property(prop_id) is False


def test_template_in_use_cannot_be_deleted(template_repository, entity_repository, default_templates):
    entity_repository.create_entity(3)

    with pytest.raises(TemplateInUseError):
        template_repository.delete_template(3)

    workflow = template_repository.create_template("Workflow")
    template_repository.create_property(workflow, "Step")
    assert template_repository.delete_template(workflow) is True
    assert template_repository.get_template(workflow) is None
    assert template_repository.list_properties(workflow) == []


def test_change_listeners_receive_template_id(template_repository):
    seen: list[int | None] = []
    template_repository.add_change_listener(seen.append)

    template_id = template_repository.create_template("Workflow")
    template_repository.update_template(template_id, description="Steps")
    template_repository.create_property(template_id, "Step")

    assert seen == [template_id, template_id, template_id]


def test_seeding_fails_when_template_cannot_be_read_back(template_repository, monkeypatch):
    monkeypatch.setattr(template_repository, "get_template", lambda template_id: None)

    with pytest.raises(UnknownTemplateError):
        ensure_default_templates(template_repository)


def test_template_writes_wrap_database_errors(template_repository, monkeypatch):
    template_id = template_repository.create_template("Workflow")

    def _fail(self):
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(Session, "commit", _fail)

    with pytest.raises(PersistenceError):
        template_repository.update_template(template_id, description="Steps")
    with pytest.raises(PersistenceError):
        template_repository.delete_template(template_id)

    monkeypatch.undo()
    assert template_repository.get_template(template_id).description == ""
