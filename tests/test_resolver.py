from datetime import timedelta

import pytest
from sqlalchemy import update

from app.features.permissions.cache import DatabasePermissionCache, MemoryPermissionCache, TieredPermissionCache
from app.features.permissions.entries import EntryState, OrgContext
from app.features.permissions.exceptions import HierarchyIntegrityError, NotFoundError
from app.features.permissions.models import OrganizationalTier, PermissionEffect, Role
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.service import BindingChange
from app.utils import utcnow
from tests.utils import OTHER_TENANT, TENANT, USER_ID, make_role


@pytest.fixture()
def now():
    return utcnow()


async def _sales_line(service, db, actor):
    """SALES_REP (root) -> SALES_SUPERVISOR -> SALES_MANAGER."""
    rep = await make_role(
        service, db, actor, "SALES_REP",
        ["lead.view_own", "lead.view_team", "quote.approve_standard", "quote.create", "ticket.create"],
    )
    supervisor = await make_role(service, db, actor, "SALES_SUPERVISOR", ["lead.edit_team"], parent=rep, level=3)
    manager = await make_role(service, db, actor, "SALES_MANAGER", ["lead.view_location"], parent=supervisor, level=4)
    return rep, supervisor, manager


async def _override(service, db, actor, code, effect, **kwargs):
    return await service.create_override(
        db, actor, TENANT, USER_ID, code, effect,
        "Coverage during audit", "Regional manager on leave", **kwargs,
    )


@pytest.mark.asyncio
async def test_descendant_role_inherits_ancestor_grants(db, service, resolver, actor, context, catalog) -> None:
    rep, supervisor, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id)

    permissions = await resolver.resolve(db, USER_ID, context)

    assert await resolver.has_permission(db, USER_ID, "lead.view_team", context)
    assert permissions.get("lead.view_team").source == "role"
    assert permissions.get("lead.view_team").source_id == rep.id
    assert permissions.state("lead.edit_team") == EntryState.ALLOWED
    # Grants of more senior roles do not flow upwards
    assert permissions.state("lead.view_location") == EntryState.ABSENT


@pytest.mark.asyncio
async def test_descendant_binding_replaces_ancestor_allow(db, service, resolver, actor, context, catalog) -> None:
    _, supervisor, _ = await _sales_line(service, db, actor)
    await service.customize_role(
        db, actor, TENANT, supervisor.id,
        [BindingChange("quote.create", PermissionEffect.DENY)],
        reason="Supervisors route quotes through reps",
    )
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id)

    permissions = await resolver.resolve(db, USER_ID, context)

    assert permissions.state("quote.create") == EntryState.DENIED
    assert permissions.get("quote.create").source_id == supervisor.id
    assert not await resolver.has_permission(db, USER_ID, "quote.create", context)


@pytest.mark.asyncio
async def test_ancestor_deny_is_terminal(db, service, resolver, actor, context, catalog) -> None:
    rep, supervisor, _ = await _sales_line(service, db, actor)
    await service.customize_role(db, actor, TENANT, rep.id, [BindingChange("ticket.create", PermissionEffect.DENY)])
    await service.customize_role(db, actor, TENANT, supervisor.id, [BindingChange("ticket.create", PermissionEffect.ALLOW)])
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id)

    permissions = await resolver.resolve(db, USER_ID, context)

    assert permissions.state("ticket.create") == EntryState.DENIED
    assert permissions.get("ticket.create").source_id == rep.id


@pytest.mark.asyncio
async def test_deny_from_any_assigned_role_wins(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    restricted = await make_role(service, db, actor, "RESTRICTED", [])
    await service.customize_role(db, actor, TENANT, restricted.id, [BindingChange("lead.view_own", PermissionEffect.DENY)])
    await service.assign_role(db, actor, TENANT, USER_ID, restricted.id)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)


@pytest.mark.asyncio
async def test_override_deny_beats_role_allow(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)
    assert await resolver.has_permission(db, USER_ID, "quote.approve_standard", context)

    override = await _override(service, db, actor, "quote.approve_standard", PermissionEffect.DENY)

    assert not await resolver.has_permission(db, USER_ID, "quote.approve_standard", context)
    entry = (await resolver.resolve(db, USER_ID, context)).get("quote.approve_standard")
    assert (entry.source, entry.source_id) == ("override", override.id)


@pytest.mark.asyncio
async def test_override_allow_beats_role_deny(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.customize_role(db, actor, TENANT, rep.id, [BindingChange("quote.create", PermissionEffect.DENY)])
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    await _override(service, db, actor, "quote.create", PermissionEffect.ALLOW)

    assert await resolver.has_permission(db, USER_ID, "quote.create", context)


@pytest.mark.asyncio
async def test_override_grants_code_no_role_binds(db, service, resolver, actor, context, catalog) -> None:
    await _override(service, db, actor, "territory.view_performance", PermissionEffect.ALLOW)

    assert await resolver.has_permission(db, USER_ID, "territory.view_performance", context)


@pytest.mark.asyncio
async def test_conflicting_overrides_deny_wins(db, service, resolver, actor, context, catalog) -> None:
    await _override(service, db, actor, "territory.view_performance", PermissionEffect.ALLOW)
    await _override(service, db, actor, "territory.view_performance", PermissionEffect.DENY)
    await _override(service, db, actor, "territory.view_performance", PermissionEffect.ALLOW)

    assert not await resolver.has_permission(db, USER_ID, "territory.view_performance", context)


@pytest.mark.asyncio
async def test_expired_override_falls_back_to_roles(db, service, resolver, actor, context, catalog, now) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id, effective_from=now - timedelta(days=1))
    await _override(
        service, db, actor, "quote.approve_standard", PermissionEffect.DENY,
        effective_from=now - timedelta(hours=1), effective_until=now + timedelta(hours=1),
    )

    assert not await resolver.has_permission(db, USER_ID, "quote.approve_standard", context, now=now)
    later = now + timedelta(hours=2)
    assert await resolver.has_permission(db, USER_ID, "quote.approve_standard", context, now=later)


@pytest.mark.asyncio
async def test_cached_set_expires_when_override_window_closes(db, service, resolver, actor, context, catalog, now) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id, effective_from=now - timedelta(days=1))
    await _override(
        service, db, actor, "quote.approve_standard", PermissionEffect.DENY,
        effective_from=now - timedelta(hours=1), effective_until=now + timedelta(minutes=5),
    )

    assert not await resolver.has_permission(db, USER_ID, "quote.approve_standard", context, now=now)
    # Well inside the cache TTL, but past the override's end
    later = now + timedelta(minutes=10)
    assert await resolver.has_permission(db, USER_ID, "quote.approve_standard", context, now=later)


@pytest.mark.asyncio
async def test_cached_set_expires_when_assignment_starts(db, service, resolver, actor, context, catalog, now) -> None:
    rep, supervisor, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id, effective_from=now - timedelta(days=1))
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id, effective_from=now + timedelta(minutes=5))

    assert not await resolver.has_permission(db, USER_ID, "lead.edit_team", context, now=now)
    assert await resolver.has_permission(db, USER_ID, "lead.edit_team", context, now=now + timedelta(minutes=10))


@pytest.mark.asyncio
async def test_expiry_is_capped_by_window_changes(db, service, resolver, actor, catalog, now) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(
        db, actor, TENANT, USER_ID, rep.id,
        effective_from=now - timedelta(days=1), effective_until=now + timedelta(minutes=7),
    )

    assert await resolver.expiry(db, USER_ID, TENANT, now) == now + timedelta(minutes=7)
    assert await resolver.expiry(db, USER_ID, OTHER_TENANT, now) == now + resolver.ttl


@pytest.mark.asyncio
async def test_expired_assignment_contributes_nothing(db, service, resolver, actor, context, catalog, now) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(
        db, actor, TENANT, USER_ID, rep.id,
        effective_from=now - timedelta(days=30),
        effective_until=now - timedelta(days=1),
    )

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)
    assert len(await resolver.resolve(db, USER_ID, context)) == 0


@pytest.mark.asyncio
async def test_future_assignment_is_not_yet_active(db, service, resolver, actor, context, catalog, now) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id, effective_from=now + timedelta(days=1))

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context, now=now)
    assert await resolver.has_permission(db, USER_ID, "lead.view_own", context, now=now + timedelta(days=2))


@pytest.mark.asyncio
async def test_deactivated_assignment_contributes_nothing(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    assignment = await service.assign_role(db, actor, TENANT, USER_ID, rep.id)
    assert await resolver.has_permission(db, USER_ID, "lead.view_own", context)

    await service.deactivate_assignment(db, actor, TENANT, assignment.id)

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)


@pytest.mark.asyncio
async def test_unit_context_restricts_assignments(db, service, resolver, actor, catalog) -> None:
    hq = await service.create_unit(db, actor, TENANT, "Headquarters", "HQ", OrganizationalTier.COMPANY)
    east = await service.create_unit(db, actor, TENANT, "East", "EAST", OrganizationalTier.LOCATION, parent_id=hq.id)
    west = await service.create_unit(db, actor, TENANT, "West", "WEST", OrganizationalTier.LOCATION, parent_id=hq.id)
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id, organizational_unit_id=east.id)

    assert await resolver.has_permission(db, USER_ID, "lead.view_own", OrgContext(tenant_id=TENANT, unit_id=east.id))
    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", OrgContext(tenant_id=TENANT, unit_id=west.id))
    assert await resolver.has_permission(db, USER_ID, "lead.view_own", OrgContext(tenant_id=TENANT))


@pytest.mark.asyncio
async def test_assignments_do_not_cross_tenants(db, service, resolver, actor, context, catalog) -> None:
    foreign = await make_role(service, db, actor, "SALES_REP", ["lead.view_own"], tenant_id=OTHER_TENANT)
    await service.assign_role(db, actor, OTHER_TENANT, USER_ID, foreign.id)

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)
    assert await resolver.has_permission(db, USER_ID, "lead.view_own", OrgContext(tenant_id=OTHER_TENANT))


@pytest.mark.asyncio
async def test_unknown_permission_code_raises(db, resolver, context, catalog) -> None:
    with pytest.raises(NotFoundError):
        await resolver.has_permission(db, USER_ID, "lead.teleport", context)


@pytest.mark.asyncio
async def test_binding_conditions_are_evaluated(db, service, resolver, actor, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.customize_role(
        db, actor, TENANT, rep.id,
        [BindingChange("quote.create", PermissionEffect.ALLOW, {"locations": ["loc-1"]})],
    )
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    at_loc1 = OrgContext(tenant_id=TENANT, location_id="loc-1")
    at_loc2 = OrgContext(tenant_id=TENANT, location_id="loc-2")
    assert await resolver.has_permission(db, USER_ID, "quote.create", at_loc1)
    assert not await resolver.has_permission(db, USER_ID, "quote.create", at_loc2)
    # The entry is still allowed; only the decision fails
    assert (await resolver.resolve(db, USER_ID, at_loc2)).state("quote.create") == EntryState.ALLOWED


@pytest.mark.asyncio
async def test_malformed_binding_condition_denies(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.customize_role(
        db, actor, TENANT, rep.id,
        [BindingChange("quote.create", PermissionEffect.ALLOW, {"time_between": {"start": "08:00"}})],
    )
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    assert await resolver.has_permission(db, USER_ID, "quote.create", context) is False


@pytest.mark.asyncio
async def test_failing_ownership_check_denies(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.customize_role(
        db, actor, TENANT, rep.id,
        [BindingChange("lead.view_own", PermissionEffect.ALLOW, {"resource_owner": "lead"})],
    )
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    async def unreachable(user_id: str, resource_id: str) -> bool:
        raise ConnectionError("lead service unavailable")

    resolver.evaluator.register_ownership_check("lead", unreachable)

    assert await resolver.has_permission(db, USER_ID, "lead.view_own", context, resource_id="lead-1") is False


@pytest.mark.asyncio
async def test_resolution_failure_fails_closed(db, service, resolver, actor, context, catalog, monkeypatch) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    async def broken(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(resolver, "compute", broken)

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)


@pytest.mark.asyncio
async def test_corrupt_role_hierarchy_is_not_swallowed(db, service, resolver, actor, context, catalog) -> None:
    _, supervisor, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id)
    await db.execute(update(Role).where(Role.id == supervisor.id).values(depth=5))
    await db.commit()
    db.expire_all()

    with pytest.raises(HierarchyIntegrityError):
        await resolver.has_permission(db, USER_ID, "lead.view_own", context)


@pytest.mark.asyncio
async def test_resolve_is_idempotent_and_counts_cache_hits(db, service, actor, context, catalog, roles, session_factory) -> None:
    cache = TieredPermissionCache(MemoryPermissionCache(), DatabasePermissionCache(session_factory))
    resolver = PermissionResolver(cache, roles)
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)

    first = await resolver.resolve(db, USER_ID, context)
    second = await resolver.resolve(db, USER_ID, context)

    assert first == second
    assert first.to_payload() == second.to_payload()
    assert cache.l1.stats()["hits"] == 1

    # A fresh process reads the persisted tier and bumps its hit counter
    restarted = PermissionResolver(TieredPermissionCache(MemoryPermissionCache(), cache.l2), roles)
    assert await restarted.resolve(db, USER_ID, context) == first


@pytest.mark.asyncio
async def test_mutation_invalidates_tenant_cache(db, service, resolver, actor, context, catalog, cache) -> None:
    rep, supervisor, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)
    other_context = OrgContext(tenant_id=OTHER_TENANT)
    await resolver.resolve(db, "someone-else", other_context)

    assert not await resolver.has_permission(db, USER_ID, "lead.edit_team", context)
    await service.assign_role(db, actor, TENANT, USER_ID, supervisor.id)

    assert await resolver.has_permission(db, USER_ID, "lead.edit_team", context)
    # Other tenants keep their entries
    assert cache.l1.stats()["entries"] == 2


@pytest.mark.asyncio
async def test_customization_invalidates_tenant_cache(db, service, resolver, actor, context, catalog) -> None:
    rep, _, _ = await _sales_line(service, db, actor)
    await service.assign_role(db, actor, TENANT, USER_ID, rep.id)
    assert await resolver.has_permission(db, USER_ID, "lead.view_own", context)

    await service.customize_role(db, actor, TENANT, rep.id, [BindingChange("lead.view_own", PermissionEffect.DENY)])

    assert not await resolver.has_permission(db, USER_ID, "lead.view_own", context)
