"""
Nested-set hierarchy store for organizational units and roles.

Reads (ancestors/descendants) are single range queries. Structural
changes are serialized per tenant: the tenant's tree is loaded into a
``NestedSetTree`` under a lock, mutated, and the new coordinates are
committed in the same transaction before the lock is released.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Generic, Optional, TypeVar

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.exceptions import HierarchyIntegrityError, NotFoundError
from app.features.permissions.models import OrganizationalUnit, Role, generate_ulid
from app.features.permissions.nested_set import Coordinates, NestedSetTree
from app.utils import get_logger


log = get_logger(__name__)

NodeT = TypeVar("NodeT", OrganizationalUnit, Role)


class TreeEditor(Generic[NodeT]):
    """
    Structural edits against one tenant's loaded tree.

    Each operation writes the recomputed coordinates back onto the ORM
    rows immediately; the enclosing ``HierarchyStore.edit`` commits them.
    """

    def __init__(self, store: "HierarchyStore[NodeT]", db: AsyncSession, tree: NestedSetTree, rows: dict[str, NodeT]):
        self.store = store
        self.db = db
        self.tree = tree
        self.rows = rows

    def row(self, node_id: str) -> NodeT:
        node = self.rows.get(node_id)
        if node is None:
            raise NotFoundError(self.store.name, node_id)
        return node

    def insert(self, node: NodeT, parent_id: Optional[str] = None) -> Coordinates:
        if parent_id is not None:
            self.row(parent_id)
        if node.id is None:
            node.id = generate_ulid()
        node.tenant_id = self.tree.tenant_id
        node.parent_id = parent_id
        coords = self.tree.insert(node.id, parent_id)
        self.rows[node.id] = node
        self.db.add(node)
        self._write_back()
        log.debug(f"Inserted {self.store.name} {node.id} at {coords} (tenant {self.tree.tenant_id})")
        return coords

    def move(self, node_id: str, new_parent_id: Optional[str]) -> None:
        node = self.row(node_id)
        if new_parent_id is not None:
            self.row(new_parent_id)
        self.tree.move(node_id, new_parent_id)
        node.parent_id = new_parent_id
        self._write_back()
        log.debug(f"Moved {self.store.name} {node_id} under {new_parent_id} (tenant {self.tree.tenant_id})")

    def _write_back(self) -> None:
        for key, coords in self.tree.snapshot().items():
            row = self.rows[key]
            if (row.lft, row.rgt, row.depth) != (coords.lft, coords.rgt, coords.depth):
                row.lft = coords.lft
                row.rgt = coords.rgt
                row.depth = coords.depth


class HierarchyStore(Generic[NodeT]):
    """
    Tenant-scoped nested-set store over one model (units or roles).

    Construct once per process; the per-tenant locks only serialize
    writers inside this process. On PostgreSQL a transaction-scoped
    advisory lock extends the serialization across processes.
    """

    def __init__(self, model: type[NodeT], name: str):
        self.model = model
        self.name = name
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        return lock

    async def get(self, db: AsyncSession, node_id: str, tenant_id: Optional[str] = None) -> NodeT:
        """Fetch a node, optionally requiring it to belong to ``tenant_id``."""
        node = await db.get(self.model, node_id)
        if node is None or (tenant_id is not None and node.tenant_id != tenant_id):
            raise NotFoundError(self.name, node_id)
        return node

    async def ancestors_of(self, db: AsyncSession, node_id: str) -> list[NodeT]:
        """
        Ordered chain from the tenant root down to the node (self included).

        Raises:
            NotFoundError: if the node does not exist
            HierarchyIntegrityError: if the stored ranges do not form a proper chain
        """
        node = await self.get(db, node_id)
        M = self.model
        result = await db.execute(
            select(M)
            .where(
                M.tenant_id == node.tenant_id,
                M.lft <= node.lft,
                M.rgt >= node.lft,
            )
            .order_by(M.depth, M.lft)
        )
        chain = list(result.scalars().all())
        self._check_chain(node, chain)
        return chain

    async def descendants_of(self, db: AsyncSession, node_id: str) -> list[NodeT]:
        """Nodes strictly inside the node's range, in ascending ``lft``."""
        node = await self.get(db, node_id)
        M = self.model
        result = await db.execute(
            select(M)
            .where(
                M.tenant_id == node.tenant_id,
                M.lft > node.lft,
                M.lft < node.rgt,
            )
            .order_by(M.lft)
        )
        descendants = list(result.scalars().all())
        for descendant in descendants:
            if descendant.rgt >= node.rgt or descendant.depth <= node.depth:
                self._fail(
                    node.tenant_id,
                    f"{descendant.id} [{descendant.lft}, {descendant.rgt}] overlaps {node.id} [{node.lft}, {node.rgt}]"
                )
        return descendants

    def _check_chain(self, node: NodeT, chain: list[NodeT]) -> None:
        if node.lft >= node.rgt:
            self._fail(node.tenant_id, f"{node.id} has lft {node.lft} >= rgt {node.rgt}")
        if len(chain) != node.depth + 1 or chain[-1].id != node.id:
            self._fail(node.tenant_id, f"{node.id} at depth {node.depth} has {len(chain)} enclosing ranges")
        for expected_depth, ancestor in enumerate(chain):
            if ancestor.depth != expected_depth:
                self._fail(node.tenant_id, f"{ancestor.id} has depth {ancestor.depth}, expected {expected_depth}")
        for outer, inner in zip(chain, chain[1:]):
            if not (outer.lft < inner.lft and inner.rgt < outer.rgt) or inner.parent_id != outer.id:
                self._fail(node.tenant_id, f"{inner.id} is not nested inside {outer.id}")

    def _fail(self, tenant_id: str, detail: str):
        error = HierarchyIntegrityError(self.name, tenant_id, detail)
        log.critical(str(error))
        raise error

    async def load_tree(self, db: AsyncSession, tenant_id: str) -> NestedSetTree:
        rows = await self._rows(db, tenant_id)
        return self._build(tenant_id, rows)

    async def _rows(self, db: AsyncSession, tenant_id: str) -> dict[str, NodeT]:
        M = self.model
        result = await db.execute(select(M).where(M.tenant_id == tenant_id).order_by(M.lft))
        return {node.id: node for node in result.scalars().all()}

    def _build(self, tenant_id: str, rows: dict[str, NodeT]) -> NestedSetTree:
        try:
            return NestedSetTree.from_rows(
                ((n.id, n.parent_id, n.lft, n.rgt, n.depth) for n in rows.values()),
                name=self.name,
                tenant_id=tenant_id,
            )
        except HierarchyIntegrityError as e:
            log.critical(str(e))
            raise

    async def _acquire_advisory_lock(self, db: AsyncSession, tenant_id: str) -> None:
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"{self.name}:{tenant_id}"}
            )

    @asynccontextmanager
    async def edit(self, db: AsyncSession, tenant_id: str) -> AsyncIterator[TreeEditor[NodeT]]:
        """
        Serialized structural change for one tenant.

        Anything else added to ``db`` inside the block (bindings, audit rows)
        commits atomically with the new coordinates.

        Usage:
            async with store.edit(db, tenant_id) as editor:
                editor.insert(role, parent_id)
        """
        async with self._lock(tenant_id):
            try:
                await self._acquire_advisory_lock(db, tenant_id)
                rows = await self._rows(db, tenant_id)
                editor = TreeEditor(self, db, self._build(tenant_id, rows), rows)
                yield editor
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

    async def insert_child(self, db: AsyncSession, node: NodeT, parent_id: Optional[str] = None) -> Coordinates:
        """Place ``node`` as the last child of ``parent_id`` (or a tenant root) and commit."""
        async with self.edit(db, node.tenant_id) as editor:
            return editor.insert(node, parent_id)

    async def move_subtree(self, db: AsyncSession, tenant_id: str, node_id: str, new_parent_id: Optional[str]) -> None:
        """Re-parent a subtree within its tenant and commit."""
        async with self.edit(db, tenant_id) as editor:
            editor.move(node_id, new_parent_id)

    async def verify(self, db: AsyncSession, tenant_id: str) -> int:
        """Validate the whole tenant tree; returns its node count."""
        return len(await self.load_tree(db, tenant_id))
