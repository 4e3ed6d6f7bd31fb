import random

import pytest

from app.features.permissions.exceptions import (
    HierarchyIntegrityError,
    InvalidOperationError,
    NotFoundError,
)
from app.features.permissions.nested_set import Coordinates, NestedSetTree


def _tree() -> NestedSetTree:
    tree = NestedSetTree("role", "tenant-a")
    tree.insert("a")
    tree.insert("b", "a")
    tree.insert("c", "a")
    return tree


def _assert_nested(tree: NestedSetTree) -> None:
    tree.validate()
    snapshot = tree.snapshot()
    for key, coords in snapshot.items():
        assert coords.lft < coords.rgt
        parent = tree.parent_of(key)
        if parent is not None:
            outer = snapshot[parent]
            assert outer.lft < coords.lft and coords.rgt < outer.rgt
    values = [v for c in snapshot.values() for v in (c.lft, c.rgt)]
    assert len(values) == len(set(values))


def test_insert_assigns_parent_rgt_slot() -> None:
    tree = _tree()

    assert tree.coordinates("a") == Coordinates(1, 6, 0)
    assert tree.coordinates("b") == Coordinates(2, 3, 1)
    assert tree.coordinates("c") == Coordinates(4, 5, 1)


def test_insert_under_parent_with_children_shifts_later_siblings_by_two() -> None:
    tree = _tree()
    before = tree.coordinates("c")

    coords = tree.insert("e", "b")

    assert coords == Coordinates(3, 4, 2)
    after = tree.coordinates("c")
    assert (after.lft - before.lft, after.rgt - before.rgt) == (2, 2)
    assert tree.coordinates("b") == Coordinates(2, 5, 1)
    assert tree.coordinates("a") == Coordinates(1, 8, 0)
    _assert_nested(tree)


def test_new_root_is_placed_after_existing_forest() -> None:
    tree = _tree()

    assert tree.insert("x") == Coordinates(7, 8, 0)
    _assert_nested(tree)


def test_ancestors_are_root_first_and_include_self() -> None:
    tree = _tree()
    tree.insert("e", "b")

    assert tree.ancestors_of("e") == ["a", "b", "e"]
    assert tree.ancestors_of("a") == ["a"]


def test_descendants_are_in_preorder() -> None:
    tree = _tree()
    tree.insert("e", "b")

    assert tree.descendants_of("a") == ["b", "e", "c"]
    assert tree.descendants_of("c") == []


def test_move_renumbers_forest() -> None:
    tree = _tree()
    tree.insert("e", "b")

    tree.move("c", "b")

    assert tree.ancestors_of("c") == ["a", "b", "c"]
    assert tree.coordinates("a") == Coordinates(1, 8, 0)
    assert tree.coordinates("b") == Coordinates(2, 7, 1)
    assert tree.coordinates("e") == Coordinates(3, 4, 2)
    assert tree.coordinates("c") == Coordinates(5, 6, 2)
    _assert_nested(tree)


def test_move_to_root() -> None:
    tree = _tree()

    tree.move("b", None)

    assert tree.parent_of("b") is None
    assert tree.coordinates("b").depth == 0
    _assert_nested(tree)


def test_move_under_own_subtree_is_rejected() -> None:
    tree = _tree()
    tree.insert("e", "b")

    with pytest.raises(InvalidOperationError):
        tree.move("b", "e")
    with pytest.raises(InvalidOperationError):
        tree.move("b", "b")


def test_duplicate_insert_is_rejected() -> None:
    tree = _tree()

    with pytest.raises(InvalidOperationError):
        tree.insert("b", "c")


def test_unknown_nodes_raise_not_found() -> None:
    tree = _tree()

    with pytest.raises(NotFoundError):
        tree.insert("z", "missing")
    with pytest.raises(NotFoundError):
        tree.ancestors_of("missing")


def test_from_rows_round_trips_snapshot() -> None:
    tree = _tree()
    tree.insert("e", "b")
    rows = [(key, tree.parent_of(key), c.lft, c.rgt, c.depth) for key, c in tree.snapshot().items()]

    loaded = NestedSetTree.from_rows(reversed(rows), "role", "tenant-a")

    assert loaded.snapshot() == tree.snapshot()
    assert loaded.ancestors_of("e") == ["a", "b", "e"]


@pytest.mark.parametrize(
    "rows",
    [
        # overlapping siblings
        [("a", None, 1, 6, 0), ("b", "a", 2, 4, 1), ("c", "a", 3, 5, 1)],
        # child escapes parent range
        [("a", None, 1, 4, 0), ("b", "a", 2, 5, 1)],
        # lft >= rgt
        [("a", None, 3, 3, 0)],
        # wrong depth
        [("a", None, 1, 4, 0), ("b", "a", 2, 3, 2)],
        # dangling parent
        [("a", None, 1, 2, 0), ("b", "missing", 3, 4, 1)],
    ],
)
def test_from_rows_rejects_inconsistent_coordinates(rows) -> None:
    with pytest.raises(HierarchyIntegrityError) as exc_info:
        NestedSetTree.from_rows(rows, "role", "tenant-a")

    assert exc_info.value.tenant_id == "tenant-a"


def test_invariant_holds_after_random_inserts_and_moves() -> None:
    rng = random.Random(7)
    tree = NestedSetTree("organizational unit", "tenant-a")
    keys: list[str] = []

    for i in range(60):
        key = f"n{i}"
        parent = rng.choice(keys) if keys and rng.random() < 0.85 else None
        tree.insert(key, parent)
        keys.append(key)
        _assert_nested(tree)

        if i % 5 == 4:
            node = rng.choice(keys)
            blocked = set(tree.descendants_of(node)) | {node}
            candidates = [k for k in keys if k not in blocked]
            tree.move(node, rng.choice(candidates) if candidates else None)
            _assert_nested(tree)

    assert len(tree) == 60
