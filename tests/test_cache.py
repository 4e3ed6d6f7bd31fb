from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.features.permissions.cache import (
    CachedPermissions,
    DatabasePermissionCache,
    MemoryPermissionCache,
    PermissionCache,
    TieredPermissionCache,
    cache_key,
)
from app.features.permissions.entries import EffectivePermission, OrgContext, PermissionSet
from app.features.permissions.exceptions import CacheUnavailableError
from app.features.permissions.models import PermissionCacheEntry, PermissionEffect, ScopeLevel


NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=30)


def _permissions() -> PermissionSet:
    entry = EffectivePermission(
        permission_code="lead.view_team",
        module="sales",
        resource_type="lead",
        action="view",
        scope_level=ScopeLevel.TEAM,
        effect=PermissionEffect.ALLOW,
        source="role",
        source_id="role-1",
        conditions={"time_between": ["08:00", "18:00"]},
    )
    return PermissionSet({entry.permission_code: entry})


def _entry(user_id: str = "user-1", tenant_id: str = "tenant-a", computed_at: datetime = NOW) -> CachedPermissions:
    context = OrgContext(tenant_id=tenant_id)
    return CachedPermissions(
        key=cache_key(user_id, context),
        user_id=user_id,
        tenant_id=tenant_id,
        context=context.cache_fragment(),
        permissions=_permissions(),
        computed_at=computed_at,
        expires_at=computed_at + TTL,
        computation_ms=3,
    )


class UnavailableCache(PermissionCache):
    async def get(self, key, now):
        raise CacheUnavailableError("down")

    async def set(self, entry):
        raise CacheUnavailableError("down")

    async def invalidate_tenant(self, tenant_id):
        raise CacheUnavailableError("down")

    async def record_hit(self, key):
        raise CacheUnavailableError("down")


def test_cache_key_covers_every_context_field() -> None:
    base = OrgContext(tenant_id="t", unit_id="u", location_id="l", region_id="r")
    variants = [
        OrgContext(tenant_id="t2", unit_id="u", location_id="l", region_id="r"),
        OrgContext(tenant_id="t", unit_id="u2", location_id="l", region_id="r"),
        OrgContext(tenant_id="t", unit_id="u", location_id="l2", region_id="r"),
        OrgContext(tenant_id="t", unit_id="u", location_id="l", region_id="r2"),
    ]

    assert cache_key("user-1", base) == cache_key("user-1", OrgContext(tenant_id="t", unit_id="u", location_id="l", region_id="r"))
    assert len(cache_key("user-1", base)) == 64
    assert cache_key("user-2", base) != cache_key("user-1", base)
    assert len({cache_key("user-1", v) for v in variants} | {cache_key("user-1", base)}) == 5


@pytest.mark.asyncio
async def test_memory_cache_respects_ttl() -> None:
    cache = MemoryPermissionCache()
    entry = _entry()
    await cache.set(entry)

    hit = await cache.get(entry.key, NOW + timedelta(minutes=29))
    assert hit is not None and hit.permissions == entry.permissions
    assert hit.hits == 1

    assert await cache.get(entry.key, NOW + TTL) is None
    assert cache.stats() == {"entries": 0, "hits": 1, "misses": 1}


@pytest.mark.asyncio
async def test_memory_cache_invalidates_one_tenant() -> None:
    cache = MemoryPermissionCache()
    await cache.set(_entry("user-1", "tenant-a"))
    await cache.set(_entry("user-2", "tenant-a"))
    kept = _entry("user-1", "tenant-b")
    await cache.set(kept)

    assert await cache.invalidate_tenant("tenant-a") == 2
    assert await cache.get(kept.key, NOW) is not None


@pytest.mark.asyncio
async def test_database_cache_round_trip_counts_hits(session_factory) -> None:
    cache = DatabasePermissionCache(session_factory)
    entry = _entry()
    await cache.set(entry)

    first = await cache.get(entry.key, NOW)
    second = await cache.get(entry.key, NOW)

    assert first.permissions == entry.permissions
    assert (first.hits, second.hits) == (1, 2)
    assert first.expires_at == entry.expires_at
    assert await cache.get(entry.key, NOW + TTL) is None


@pytest.mark.asyncio
async def test_database_cache_set_replaces_existing_key(session_factory) -> None:
    cache = DatabasePermissionCache(session_factory)
    await cache.set(_entry())
    later = _entry(computed_at=NOW + timedelta(minutes=10))
    await cache.set(later)

    async with session_factory() as session:
        rows = (await session.execute(select(PermissionCacheEntry))).scalars().all()

    assert len(rows) == 1
    assert rows[0].expires_at == later.expires_at


@pytest.mark.asyncio
async def test_database_cache_invalidate_tenant(session_factory) -> None:
    cache = DatabasePermissionCache(session_factory)
    await cache.set(_entry("user-1", "tenant-a"))
    await cache.set(_entry("user-1", "tenant-b"))

    assert await cache.invalidate_tenant("tenant-a") == 1
    assert await cache.get(_entry("user-1", "tenant-b").key, NOW) is not None


@pytest.mark.asyncio
async def test_l2_hit_survives_restart_and_populates_l1(session_factory) -> None:
    entry = _entry()
    await TieredPermissionCache(MemoryPermissionCache(), DatabasePermissionCache(session_factory)).set(entry)

    restarted = TieredPermissionCache(MemoryPermissionCache(), DatabasePermissionCache(session_factory))
    hit = await restarted.get(entry.key, NOW)

    assert hit is not None and hit.permissions == entry.permissions
    assert restarted.l1.stats()["entries"] == 1


@pytest.mark.asyncio
async def test_unavailable_l2_degrades_reads_and_writes() -> None:
    cache = TieredPermissionCache(MemoryPermissionCache(), UnavailableCache())
    entry = _entry()

    assert await cache.get(entry.key, NOW) is None
    await cache.set(entry)
    assert (await cache.get(entry.key, NOW)).permissions == entry.permissions


@pytest.mark.asyncio
async def test_unavailable_l2_fails_invalidation_after_clearing_l1() -> None:
    cache = TieredPermissionCache(MemoryPermissionCache(), UnavailableCache())
    entry = _entry()
    await cache.set(entry)

    with pytest.raises(CacheUnavailableError):
        await cache.invalidate_tenant("tenant-a")

    assert cache.l1.stats()["entries"] == 0


@pytest.mark.asyncio
async def test_memory_cache_is_bounded() -> None:
    cache = MemoryPermissionCache(maxsize=2)
    for user_id in ("user-1", "user-2", "user-3"):
        await cache.set(_entry(user_id))

    assert cache.stats()["entries"] == 2
    assert await cache.get(_entry("user-3").key, NOW) is not None


@pytest.mark.asyncio
async def test_l1_hits_are_counted_in_l2(session_factory) -> None:
    cache = TieredPermissionCache(MemoryPermissionCache(), DatabasePermissionCache(session_factory))
    entry = _entry()
    await cache.set(entry)

    await cache.get(entry.key, NOW)
    await cache.get(entry.key, NOW)

    assert cache.l1.stats()["hits"] == 2
    async with session_factory() as session:
        hits = await session.scalar(select(PermissionCacheEntry.cache_hits))
    assert hits == 2
