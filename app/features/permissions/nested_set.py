"""
In-memory nested-set tree.

A tenant's organizational units or roles are loaded into an arena of
nodes addressed by integer index, with explicit parent/children indices
next to the (lft, rgt, depth) coordinates. Structural changes are applied
here and the resulting coordinates are written back to storage in one
transaction (see ``hierarchy.HierarchyStore``).

Example:
    tree = NestedSetTree("role", "tenant-1")
    tree.insert("rep")                 # Coordinates(lft=1, rgt=2, depth=0)
    tree.insert("supervisor", "rep")   # Coordinates(lft=2, rgt=3, depth=1)
    tree.ancestors_of("supervisor")    # ["rep", "supervisor"]
"""
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from app.features.permissions.exceptions import (
    HierarchyIntegrityError,
    InvalidOperationError,
    NotFoundError,
)


@dataclass(frozen=True)
class Coordinates:
    lft: int
    rgt: int
    depth: int


@dataclass
class TreeNode:
    key: str
    parent: Optional[int] = None
    children: list[int] = field(default_factory=list)
    lft: int = 0
    rgt: int = 0
    depth: int = 0

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lft, self.rgt, self.depth)


# (key, parent_key, lft, rgt, depth)
NodeRow = tuple[str, Optional[str], int, int, int]


class NestedSetTree:
    """Forest of nested-set nodes belonging to one tenant."""

    def __init__(self, name: str = "tree", tenant_id: str = ""):
        self.name = name
        self.tenant_id = tenant_id
        self._nodes: list[TreeNode] = []
        self._index: dict[str, int] = {}
        self._roots: list[int] = []

    # ------------------------------------------------------------------
    # Construction and validation
    # ------------------------------------------------------------------

    @classmethod
    def from_rows(cls, rows: Iterable[NodeRow], name: str = "tree", tenant_id: str = "") -> "NestedSetTree":
        """
        Build a tree from stored rows and validate it.

        Raises:
            HierarchyIntegrityError: if parent pointers and coordinates disagree
        """
        tree = cls(name, tenant_id)
        rows = list(rows)

        for key, _parent_key, lft, rgt, depth in rows:
            if key in tree._index:
                tree._fail(f"duplicate node {key}")
            tree._index[key] = len(tree._nodes)
            tree._nodes.append(TreeNode(key=key, lft=lft, rgt=rgt, depth=depth))

        for key, parent_key, *_ in rows:
            idx = tree._index[key]
            if parent_key is None:
                tree._roots.append(idx)
                continue
            parent_idx = tree._index.get(parent_key)
            if parent_idx is None:
                tree._fail(f"node {key} references missing parent {parent_key}")
            tree._nodes[idx].parent = parent_idx
            tree._nodes[parent_idx].children.append(idx)

        tree._roots.sort(key=lambda i: tree._nodes[i].lft)
        for node in tree._nodes:
            node.children.sort(key=lambda i: tree._nodes[i].lft)

        tree.validate()
        return tree

    def validate(self) -> None:
        """
        Check the nested-set invariant for every node.

        Every node has ``lft < rgt``, a depth one below its parent, a range
        strictly inside its parent's, and no overlap with its siblings. Every
        node must be reachable from a root (no parent cycles).
        """
        visited = 0
        stack: list[tuple[Optional[int], list[int]]] = [(None, self._roots)]
        while stack:
            parent_idx, siblings = stack.pop()
            parent = self._nodes[parent_idx] if parent_idx is not None else None
            previous: Optional[TreeNode] = None
            for idx in siblings:
                node = self._nodes[idx]
                visited += 1
                if node.lft >= node.rgt:
                    self._fail(f"node {node.key} has lft {node.lft} >= rgt {node.rgt}")
                expected_depth = parent.depth + 1 if parent else 0
                if node.depth != expected_depth:
                    self._fail(f"node {node.key} has depth {node.depth}, expected {expected_depth}")
                if parent and not (parent.lft < node.lft and node.rgt < parent.rgt):
                    self._fail(f"node {node.key} [{node.lft}, {node.rgt}] escapes parent {parent.key} [{parent.lft}, {parent.rgt}]")
                if previous and previous.rgt >= node.lft:
                    self._fail(f"siblings {previous.key} and {node.key} overlap")
                previous = node
                stack.append((idx, node.children))
        if visited != len(self._nodes):
            self._fail("some nodes are unreachable from any root")

    def _fail(self, detail: str):
        raise HierarchyIntegrityError(self.name, self.tenant_id, detail)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def _node(self, key: str) -> TreeNode:
        idx = self._index.get(key)
        if idx is None:
            raise NotFoundError(self.name, key)
        return self._nodes[idx]

    def coordinates(self, key: str) -> Coordinates:
        return self._node(key).coordinates

    def parent_of(self, key: str) -> Optional[str]:
        node = self._node(key)
        return self._nodes[node.parent].key if node.parent is not None else None

    def ancestors_of(self, key: str) -> list[str]:
        """Keys from the root down to ``key`` (self included)."""
        chain = []
        node: Optional[TreeNode] = self._node(key)
        while node is not None:
            chain.append(node.key)
            node = self._nodes[node.parent] if node.parent is not None else None
        chain.reverse()
        return chain

    def descendants_of(self, key: str) -> list[str]:
        """Keys strictly below ``key`` in pre-order (ascending lft)."""
        return [n.key for n in self._walk(self._node(key).children)]

    def snapshot(self) -> dict[str, Coordinates]:
        return {node.key: node.coordinates for node in self._nodes}

    def max_rgt(self) -> int:
        return max((node.rgt for node in self._nodes), default=0)

    def _walk(self, start: list[int]) -> Iterator[TreeNode]:
        stack = list(reversed(start))
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, key: str, parent_key: Optional[str] = None) -> Coordinates:
        """
        Insert ``key`` as the last child of ``parent_key`` (or as a new root).

        Every node whose rgt (or lft) is at or beyond the parent's rgt is
        shifted by two; the new node takes ``(parent.rgt, parent.rgt + 1)``.
        """
        if key in self._index:
            raise InvalidOperationError(f"{self.name} {key} is already in the hierarchy")

        idx = len(self._nodes)
        if parent_key is None:
            lft = self.max_rgt() + 1
            node = TreeNode(key=key, lft=lft, rgt=lft + 1, depth=0)
            self._roots.append(idx)
        else:
            parent_idx = self._index.get(parent_key)
            if parent_idx is None:
                raise NotFoundError(self.name, parent_key)
            parent = self._nodes[parent_idx]
            boundary = parent.rgt
            for other in self._nodes:
                if other.rgt >= boundary:
                    other.rgt += 2
                if other.lft >= boundary:
                    other.lft += 2
            node = TreeNode(key=key, parent=parent_idx, lft=boundary, rgt=boundary + 1, depth=parent.depth + 1)
            parent.children.append(idx)

        self._nodes.append(node)
        self._index[key] = idx
        return node.coordinates

    def move(self, key: str, new_parent_key: Optional[str]) -> None:
        """
        Re-parent the subtree rooted at ``key`` and renumber the forest.

        Raises:
            InvalidOperationError: if the new parent lies inside the moved subtree
        """
        node = self._node(key)
        idx = self._index[key]
        new_parent_idx: Optional[int] = None
        if new_parent_key is not None:
            new_parent = self._node(new_parent_key)
            if new_parent_key == key or node.lft < new_parent.lft < node.rgt:
                raise InvalidOperationError(f"cannot move {self.name} {key} under its own subtree")
            new_parent_idx = self._index[new_parent_key]

        if node.parent == new_parent_idx:
            return

        if node.parent is None:
            self._roots.remove(idx)
        else:
            self._nodes[node.parent].children.remove(idx)

        node.parent = new_parent_idx
        if new_parent_idx is None:
            self._roots.append(idx)
        else:
            self._nodes[new_parent_idx].children.append(idx)

        self._renumber()

    def _renumber(self) -> None:
        counter = 1
        # (index, depth, exiting)
        stack: list[tuple[int, int, bool]] = [(i, 0, False) for i in reversed(self._roots)]
        while stack:
            idx, depth, exiting = stack.pop()
            node = self._nodes[idx]
            if exiting:
                node.rgt = counter
                counter += 1
                continue
            node.lft = counter
            node.depth = depth
            counter += 1
            stack.append((idx, depth, True))
            stack.extend((child, depth + 1, False) for child in reversed(node.children))
