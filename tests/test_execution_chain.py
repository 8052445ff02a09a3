from __future__ import annotations

import itertools

import pytest

from entity_block_store.schema.chain import (
    DEFAULT_EXECUTION_ORDER,
    DependencyError,
    build_chain,
    find_unmet_dependency,
    is_empty,
    require_dependencies,
    validate_dependencies,
)


def test_chain_orders_by_execution_order_then_key(make_property):
    properties = {
        "Summary": make_property("Summary", order=3),
        "Title": make_property("Title", order=1),
        "Notes": make_property("Notes"),
        "Alpha": make_property("Alpha"),
        "Description": make_property("Description", order=3),
    }

    chain = build_chain(properties)

    assert [item.key for item in chain] == ["Title", "Description", "Summary", "Alpha", "Notes"]
    assert chain[-1].order == DEFAULT_EXECUTION_ORDER


def test_chain_is_stable_under_input_permutations(make_property):
    definitions = [
        make_property("c", order=2),
        make_property("a", order=2),
        make_property("b"),
        make_property("d", order=1),
    ]
    expected = [item.key for item in build_chain({d.key: d for d in definitions})]

    for permutation in itertools.permutations(definitions):
        chain = build_chain({d.key: d for d in permutation})
        assert [item.key for item in chain] == expected
        assert build_chain({item.key: item.definition for item in chain}) == chain


def test_validate_dependencies_flags_missing_dependency(make_property):
    properties = {
        "A": make_property("A", order=1),
        "B": make_property("B", order=2, dependencies=("A",)),
    }

    assert validate_dependencies(properties, {"B": "value"}) is False
    assert validate_dependencies(properties, {"A": "x", "B": "value"}) is True
    assert find_unmet_dependency(properties, {"B": "value", "A": ""}) == ("B", "A")


def test_validate_dependencies_ignores_absent_dependents(make_property):
    properties = {
        "A": make_property("A"),
        "B": make_property("B", dependencies=("A",)),
    }

    assert validate_dependencies(properties, {}) is True
    assert validate_dependencies(properties, {"B": None}) is True
    assert validate_dependencies(properties, {"B": []}) is True


def test_dependency_check_is_one_hop(make_property):
    properties = {
        "A": make_property("A"),
        "B": make_property("B", dependencies=("A",)),
        "C": make_property("C", dependencies=("B",)),
    }

    # C only needs B; B's own dependency is checked because B is supplied.
    assert find_unmet_dependency(properties, {"C": "x", "B": "y"}) == ("B", "A")
    assert validate_dependencies(properties, {"C": "x", "B": "y", "A": "z"}) is True


def test_require_dependencies_raises_value_error(make_property):
    properties = {
        "A": make_property("A"),
        "B": make_property("B", dependencies=("A",)),
    }

    with pytest.raises(DependencyError) as excinfo:
        require_dependencies(properties, {"B": "value"})

    assert isinstance(excinfo.value, ValueError)
    assert excinfo.value.key == "B"
    assert excinfo.value.dependency == "A"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, True), ("", True), ([], True), ({}, True), (0, False), (False, False), ("x", False)],
)
def test_is_empty(value, expected):
    assert is_empty(value) is expected
