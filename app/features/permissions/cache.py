"""
Two-tier cache of resolved permission sets.

L1 is a bounded in-process TTL cache; L2 is the ``permission_cache``
table shared by every process on the same database. Entries are keyed by a SHA-256 of
the principal and organizational context, expire after a fixed TTL, and
are dropped tenant-wide on any access-control mutation.
"""
import abc
import hashlib
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Optional

from cachetools import TTLCache
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.entries import OrgContext, PermissionSet
from app.features.permissions.exceptions import CacheUnavailableError
from app.features.permissions.models import PermissionCacheEntry
from app.utils import get_logger


log = get_logger(__name__)


def cache_key(user_id: str, context: OrgContext) -> str:
    """SHA-256 hex digest of ``user:tenant:unit:location:region``."""
    raw = f"{user_id}:{context.cache_fragment()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CachedPermissions:
    key: str
    user_id: str
    tenant_id: str
    context: str
    permissions: PermissionSet
    computed_at: datetime
    expires_at: datetime
    computation_ms: Optional[int] = None
    hits: int = 0

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


class PermissionCache(abc.ABC):
    """Cache abstraction the resolver is constructed with."""

    @abc.abstractmethod
    async def get(self, key: str, now: datetime) -> Optional[CachedPermissions]:
        """Return a fresh entry or None."""

    @abc.abstractmethod
    async def set(self, entry: CachedPermissions) -> None:
        """Store an entry, replacing any entry with the same key."""

    @abc.abstractmethod
    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every entry of a tenant; returns the number removed."""

    async def record_hit(self, key: str) -> None:
        """Count a hit served by a faster tier in front of this one."""


# ============================================================================
# L1: in-process
# ============================================================================

class MemoryPermissionCache(PermissionCache):
    """Least-recently-used entries are evicted once ``maxsize`` is reached."""

    def __init__(
        self,
        maxsize: int = config.PERMISSION_CACHE_L1_MAXSIZE,
        ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS,
    ):
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self.hits = 0
        self.misses = 0

    async def get(self, key: str, now: datetime) -> Optional[CachedPermissions]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not entry.is_fresh(now):
            self._entries.pop(key, None)
            self.misses += 1
            return None
        entry = replace(entry, hits=entry.hits + 1)
        self._entries[key] = entry
        self.hits += 1
        return entry

    async def set(self, entry: CachedPermissions) -> None:
        self._entries[entry.key] = entry

    async def invalidate_tenant(self, tenant_id: str) -> int:
        stale = [key for key, entry in list(self._entries.items()) if entry.tenant_id == tenant_id]
        for key in stale:
            self._entries.pop(key, None)
        return len(stale)

    def stats(self) -> Dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


# ============================================================================
# L2: permission_cache table
# ============================================================================

class DatabasePermissionCache(PermissionCache):
    """
    Persisted tier backed by ``PermissionCacheEntry``.

    Uses its own short-lived sessions so cache writes never ride along
    with (or roll back) the caller's transaction. Database errors are
    raised as ``CacheUnavailableError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, key: str, now: datetime) -> Optional[CachedPermissions]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(PermissionCacheEntry).where(
                        PermissionCacheEntry.permission_hash == key,
                        PermissionCacheEntry.expires_at > now,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                hits = row.cache_hits + 1
                await session.execute(
                    update(PermissionCacheEntry)
                    .where(PermissionCacheEntry.id == row.id)
                    .values(cache_hits=PermissionCacheEntry.cache_hits + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return CachedPermissions(
                    key=row.permission_hash,
                    user_id=row.user_id,
                    tenant_id=row.tenant_id,
                    context=row.organizational_context,
                    permissions=PermissionSet.from_payload(row.effective_permissions),
                    computed_at=row.computed_at,
                    expires_at=row.expires_at,
                    computation_ms=row.computation_ms,
                    hits=hits,
                )
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"permission cache read failed: {e}") from e

    async def record_hit(self, key: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(PermissionCacheEntry)
                    .where(PermissionCacheEntry.permission_hash == key)
                    .values(cache_hits=PermissionCacheEntry.cache_hits + 1)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"permission cache hit count failed: {e}") from e

    async def set(self, entry: CachedPermissions) -> None:
        values = dict(
            user_id=entry.user_id,
            tenant_id=entry.tenant_id,
            organizational_context=entry.context,
            effective_permissions=entry.permissions.to_payload(),
            computed_at=entry.computed_at,
            expires_at=entry.expires_at,
            computation_ms=entry.computation_ms,
            cache_hits=0,
        )
        try:
            async with self.session_factory() as session:
                existing = await session.execute(
                    select(PermissionCacheEntry.id).where(PermissionCacheEntry.permission_hash == entry.key)
                )
                if existing.first() is None:
                    session.add(PermissionCacheEntry(permission_hash=entry.key, **values))
                    try:
                        await session.commit()
                        return
                    except IntegrityError:
                        # Another process stored the same key first
                        await session.rollback()
                await session.execute(
                    update(PermissionCacheEntry)
                    .where(PermissionCacheEntry.permission_hash == entry.key)
                    .values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"permission cache write failed: {e}") from e

    async def invalidate_tenant(self, tenant_id: str) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(PermissionCacheEntry).where(PermissionCacheEntry.tenant_id == tenant_id)
                )
                await session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise CacheUnavailableError(f"permission cache invalidation failed: {e}") from e


# ============================================================================
# Tiered
# ============================================================================

class TieredPermissionCache(PermissionCache):
    """
    L1 in front of an optional L2.

    An unreachable L2 degrades reads and writes to L1 only. Invalidation
    always clears L1 first; an L2 failure there is re-raised because a
    stale persisted entry would outlive the mutation.
    """

    def __init__(self, l1: MemoryPermissionCache, l2: Optional[PermissionCache] = None):
        self.l1 = l1
        self.l2 = l2

    async def get(self, key: str, now: datetime) -> Optional[CachedPermissions]:
        entry = await self.l1.get(key, now)
        if entry is not None:
            log.debug(f"Permission cache L1 hit {key[:12]}")
            if self.l2 is not None:
                try:
                    await self.l2.record_hit(key)
                except CacheUnavailableError as e:
                    log.warning(f"Permission cache L2 unavailable on hit count: {e}")
            return entry
        if self.l2 is None:
            return None

        try:
            entry = await self.l2.get(key, now)
        except CacheUnavailableError as e:
            log.warning(f"Permission cache L2 unavailable on read, recomputing: {e}")
            return None

        if entry is not None:
            log.debug(f"Permission cache L2 hit {key[:12]} (hits={entry.hits})")
            await self.l1.set(entry)
        return entry

    async def set(self, entry: CachedPermissions) -> None:
        await self.l1.set(entry)
        if self.l2 is None:
            return
        try:
            await self.l2.set(entry)
        except CacheUnavailableError as e:
            log.warning(f"Permission cache L2 unavailable on write, keeping L1 only: {e}")

    async def invalidate_tenant(self, tenant_id: str) -> int:
        removed = await self.l1.invalidate_tenant(tenant_id)
        if self.l2 is not None:
            try:
                removed += await self.l2.invalidate_tenant(tenant_id)
            except CacheUnavailableError as e:
                log.error(f"Permission cache invalidation for tenant {tenant_id} failed: {e}")
                raise
        log.info(f"Invalidated {removed} cached permission sets for tenant {tenant_id}")
        return removed

    def stats(self) -> Dict[str, object]:
        return {"l1": self.l1.stats(), "l2_enabled": self.l2 is not None}
