from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from entity_block_store.db.schema import DbBlock, DbEntity
from entity_block_store.models.entity import ObjectType, RelatedEntry, Stage
from entity_block_store.relationships.validator import NO_PARENT, NormalizedRelated
from entity_block_store.repositories.entity_repository import (
    BlockWrite,
    DuplicateBlockError,
    EntityPatch,
    PersistenceError,
    UnknownPropertyError,
    UnknownTemplateError,
)


@pytest.fixture
def task_props(registry, default_templates):
    return registry.load_properties(1)


def _write(props, key, value, position=0):
    return BlockWrite(props[key].id, key, value, position)


def _row_count(session_factory, model) -> int:
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def test_create_and_get_round_trip(entity_repository, task_props):
    entity_id = entity_repository.create_entity(
        1,
        blocks=[
            _write(task_props, "Items", "- [ ] a", 3),
            _write(task_props, "Title", "Write docs", 0),
            _write(task_props, "Summary", {"lines": 3, "ok": True}, 2),
        ],
        dependencies=[{"id": 9, "kind": "blocks"}],
        user="alice",
    )

    entity = entity_repository.get_entity(entity_id)

    assert entity is not None
    assert entity.stage is Stage.DRAFT
    assert entity.parent_id is None
    assert entity.related == ()
    assert entity.dependencies == ({"id": 9, "kind": "blocks"},)
    assert entity.created_by == "alice"
    assert list(entity.blocks) == ["Title", "Summary", "Items"]
    assert entity.blocks["Summary"] == {"lines": 3, "ok": True}
    assert entity.title == "Write docs"


def test_empty_values_are_not_stored(entity_repository, task_props, session_factory):
    entity_id = entity_repository.create_entity(
        1,
        blocks=[
            _write(task_props, "Title", "Kept"),
            _write(task_props, "Summary", ""),
            _write(task_props, "Items", None),
            _write(task_props, "Description", 0),
        ],
    )

    entity = entity_repository.get_entity(entity_id)
    assert set(entity.blocks) == {"Title", "Description"}
    assert entity.blocks["Description"] == 0
    assert entity_repository.count_blocks(entity_id) == 2


def test_parent_is_stored_in_both_representations(entity_repository, default_templates):
    project_id = entity_repository.create_entity(2)
    relation = NormalizedRelated(RelatedEntry(id=project_id, object=ObjectType.PROJECT))

    task_id = entity_repository.create_entity(1, relation=relation)
    entity = entity_repository.get_entity(task_id)

    assert entity.parent_id == project_id
    assert [entry.to_json() for entry in entity.related] == [{"id": project_id, "object": "project"}]
    assert [child.id for child in entity_repository.list_children(project_id)] == [task_id]


def test_create_rejects_unknown_template(entity_repository, session_factory, default_templates):
    with pytest.raises(UnknownTemplateError):
        entity_repository.create_entity(99)

    assert _row_count(session_factory, DbEntity) == 0


def test_create_rejects_foreign_property_without_partial_rows(
    entity_repository, registry, session_factory, default_templates
):
    project_title = registry.load_properties(2)["Title"]

    with pytest.raises(UnknownPropertyError):
        entity_repository.create_entity(1, blocks=[BlockWrite(project_title.id, "Title", "x")])
    with pytest.raises(UnknownPropertyError):
        entity_repository.create_entity(1, blocks=[BlockWrite(9999, "Ghost", "x")])

    assert _row_count(session_factory, DbEntity) == 0
    assert _row_count(session_factory, DbBlock) == 0


def test_duplicate_block_in_one_write_is_rejected(entity_repository, task_props, session_factory):
    with pytest.raises(DuplicateBlockError):
        entity_repository.create_entity(
            1,
            blocks=[_write(task_props, "Title", "a"), _write(task_props, "Title", "b")],
        )

    assert _row_count(session_factory, DbEntity) == 0


def test_failure_mid_write_rolls_back_entity(entity_repository, task_props, session_factory, monkeypatch):
    import entity_block_store.repositories.entity_repository as module

    calls = {"count": 0}
    real_encode = module.encode_value

    def _encode(value):
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("INSERT", {}, Exception("connection reset"))
        return real_encode(value)

    monkeypatch.setattr(module, "encode_value", _encode)

    with pytest.raises(PersistenceError) as excinfo:
        entity_repository.create_entity(
            1,
            blocks=[_write(task_props, "Title", "a"), _write(task_props, "Summary", "b")],
        )

    assert excinfo.value.transient is True
    assert _row_count(session_factory, DbEntity) == 0
    assert _row_count(session_factory, DbBlock) == 0


def test_update_upserts_blocks_in_place(entity_repository, task_props, session_factory):
    entity_id = entity_repository.create_entity(1, blocks=[_write(task_props, "Title", "v1")])

    for value in ("v2", "v3"):
        patch = EntityPatch(blocks=(_write(task_props, "Title", value),))
        assert entity_repository.update_entity(entity_id, patch, user="bob") is True

    assert entity_repository.count_blocks(entity_id, task_props["Title"].id) == 1
    entity = entity_repository.get_entity(entity_id)
    assert entity.blocks["Title"] == "v3"
    assert entity.updated_by == "bob"
    assert _row_count(session_factory, DbBlock) == 1


def test_update_adds_new_blocks_and_core_columns(entity_repository, task_props):
    entity_id = entity_repository.create_entity(1, blocks=[_write(task_props, "Title", "t")])

    patch = EntityPatch(
        stage=Stage.DOING,
        blocks=(_write(task_props, "Summary", "s", 2),),
        dependencies=(3, 4),
    )
    assert entity_repository.update_entity(entity_id, patch) is True

    entity = entity_repository.get_entity(entity_id)
    assert entity.stage is Stage.DOING
    assert entity.blocks == {"Title": "t", "Summary": "s"}
    assert entity.dependencies == (3, 4)


def test_update_missing_or_empty_returns_false(entity_repository, task_props):
    entity_id = entity_repository.create_entity(1)

    assert entity_repository.update_entity(entity_id, EntityPatch()) is False
    assert entity_repository.update_entity(9999, EntityPatch(stage=Stage.DOING)) is False


def test_update_can_clear_parent(entity_repository, default_templates):
    project_id = entity_repository.create_entity(2)
    relation = NormalizedRelated(RelatedEntry(id=project_id, object=ObjectType.PROJECT))
    task_id = entity_repository.create_entity(1, relation=relation)

    assert entity_repository.update_entity(task_id, EntityPatch(relation=NO_PARENT)) is True

    entity = entity_repository.get_entity(task_id)
    assert entity.parent_id is None
    assert entity.related == ()
    assert entity_repository.list_children(project_id) == []


def test_post_conditions_see_merged_state_and_set_stage(entity_repository, task_props):
    entity_id = entity_repository.create_entity(1, blocks=[_write(task_props, "Title", "t")])
    seen = []

    def _condition(snapshot):
        seen.append(snapshot)
        return Stage.REVIEW

    patch = EntityPatch(blocks=(_write(task_props, "Items", "- [x] a"),))
    entity_repository.update_entity(entity_id, patch, post_conditions=[_condition])

    assert seen[0].blocks == {"Title": "t", "Items": "- [x] a"}
    assert seen[0].changed_keys == frozenset({"Items"})
    assert entity_repository.get_entity(entity_id).stage is Stage.REVIEW


def test_failing_post_condition_rolls_back_update(entity_repository, task_props):
    entity_id = entity_repository.create_entity(1, blocks=[_write(task_props, "Title", "before")])

    def _boom(snapshot):
        raise OperationalError("UPDATE", {}, Exception("lost connection"))

    patch = EntityPatch(stage=Stage.DOING, blocks=(_write(task_props, "Title", "after"),))
    with pytest.raises(PersistenceError):
        entity_repository.update_entity(entity_id, patch, post_conditions=[_boom])

    entity = entity_repository.get_entity(entity_id)
    assert entity.blocks["Title"] == "before"
    assert entity.stage is Stage.DRAFT


def test_list_entities_filters(entity_repository, default_templates):
    first = entity_repository.create_entity(1)
    second = entity_repository.create_entity(1, stage=Stage.DOING)
    project = entity_repository.create_entity(2)

    assert [e.id for e in entity_repository.list_entities()] == [first, second, project]
    assert [e.id for e in entity_repository.list_entities(template_id=1)] == [first, second]
    assert [e.id for e in entity_repository.list_entities(stage="doing")] == [second]
    assert [e.id for e in entity_repository.list_entities(limit=1)] == [first]


def test_legacy_plain_text_content_is_returned_verbatim(entity_repository, task_props, session_factory):
    entity_id = entity_repository.create_entity(1)
    with session_factory() as session:
        session.add(DbBlock(entity_id=entity_id, property_id=task_props["Title"].id, content="plain title"))
        session.commit()

    assert entity_repository.get_entity(entity_id).blocks == {"Title": "plain title"}
