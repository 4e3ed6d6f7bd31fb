"""
Effective-permission resolution.

For a principal in an organizational context the resolver merges, in
order: the bindings of every actively assigned role and its ancestors
(root first), then the principal's active overrides. The result is cached
per (principal, context) and answered from the cache until it expires or
the tenant's access-control state changes.
"""
import time
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.assignments import active_assignments
from app.features.permissions.assignments import next_window_change as next_assignment_change
from app.features.permissions.bindings import bindings_for_roles
from app.features.permissions.cache import CachedPermissions, PermissionCache, cache_key
from app.features.permissions.catalog import permission_exists
from app.features.permissions.conditions import ConstraintContext, ConstraintEvaluator
from app.features.permissions.entries import EffectivePermission, EntryState, OrgContext, PermissionSet
from app.features.permissions.exceptions import HierarchyIntegrityError, NotFoundError
from app.features.permissions.hierarchy import HierarchyStore
from app.features.permissions.models import (
    Permission,
    PermissionEffect,
    PermissionOverride,
    Role,
    RolePermission,
)
from app.features.permissions.overrides import active_overrides
from app.features.permissions.overrides import next_window_change as next_override_change
from app.utils import get_logger, utcnow


log = get_logger(__name__)


def _entry(permission: Permission, effect: PermissionEffect, source: str, source_id: str, conditions=None) -> EffectivePermission:
    return EffectivePermission(
        permission_code=permission.code,
        module=permission.module,
        resource_type=permission.resource_type,
        action=permission.action,
        scope_level=permission.scope_level,
        effect=effect,
        source=source,
        source_id=source_id,
        conditions=conditions,
    )


def merge_role_bindings(bindings: Iterable[RolePermission]) -> Dict[str, EffectivePermission]:
    """
    Fold bindings (already ordered root-first) into one entry per code.

    A later binding replaces an earlier one, except that a DENY is never
    replaced by anything coming from a role.
    """
    merged: Dict[str, EffectivePermission] = {}
    for binding in bindings:
        code = binding.permission.code
        existing = merged.get(code)
        if existing is not None and existing.effect == PermissionEffect.DENY:
            continue
        merged[code] = _entry(binding.permission, binding.effect, "role", binding.role_id, binding.conditions)
    return merged


def apply_overrides(
    merged: Dict[str, EffectivePermission],
    overrides: Iterable[PermissionOverride],
) -> Dict[str, EffectivePermission]:
    """
    Overrides replace role-derived entries in both directions.

    Override entries carry no conditions. When several overrides target
    the same code, DENY wins.
    """
    result = dict(merged)
    overridden: Dict[str, PermissionEffect] = {}
    for override in overrides:
        code = override.permission.code
        if overridden.get(code) == PermissionEffect.DENY:
            continue
        overridden[code] = override.effect
        result[code] = _entry(override.permission, override.effect, "override", override.id)
    return result


class PermissionResolver:
    """
    Computes and caches effective permission sets.

    Built once per process (see ``dependencies.init_access_control``) with
    the shared cache, role hierarchy store and constraint evaluator.
    """

    def __init__(
        self,
        cache: PermissionCache,
        roles: HierarchyStore[Role],
        evaluator: Optional[ConstraintEvaluator] = None,
        ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS,
    ):
        self.cache = cache
        self.roles = roles
        self.evaluator = evaluator or ConstraintEvaluator()
        self.ttl = timedelta(seconds=ttl_seconds)

    async def compute(
        self,
        db: AsyncSession,
        user_id: str,
        context: OrgContext,
        now: Optional[datetime] = None,
    ) -> PermissionSet:
        """Resolve from storage, bypassing the cache."""
        now = now or utcnow()
        assignments = await active_assignments(db, user_id, context.tenant_id, context.unit_id, now)

        # role id -> (depth, lft); shallower roles are applied first
        ordering: Dict[str, tuple[int, int]] = {}
        for assignment in assignments:
            for role in await self.roles.ancestors_of(db, assignment.role_id):
                ordering[role.id] = (role.depth, role.lft)

        bindings = await bindings_for_roles(db, ordering.keys())
        bindings.sort(key=lambda b: (*ordering[b.role_id], b.permission.code))
        merged = merge_role_bindings(bindings)

        overrides = await active_overrides(db, user_id, context.tenant_id, context.unit_id, now)
        entries = apply_overrides(merged, overrides)

        log.debug(
            f"Resolved {len(entries)} permissions for user {user_id} in tenant {context.tenant_id} "
            f"from {len(assignments)} assignments, {len(ordering)} roles, {len(overrides)} overrides"
        )
        return PermissionSet(entries)

    async def expiry(self, db: AsyncSession, user_id: str, tenant_id: str, now: datetime) -> datetime:
        """TTL deadline, brought forward to the next assignment or override window change."""
        changes = [
            await next_assignment_change(db, user_id, tenant_id, now),
            await next_override_change(db, user_id, tenant_id, now),
        ]
        return min([now + self.ttl] + [moment for moment in changes if moment is not None])

    async def resolve(
        self,
        db: AsyncSession,
        user_id: str,
        context: OrgContext,
        now: Optional[datetime] = None,
    ) -> PermissionSet:
        """
        Effective permission set for ``user_id`` acting in ``context``.

        Raises:
            HierarchyIntegrityError: if a role chain is inconsistent
        """
        now = now or utcnow()
        key = cache_key(user_id, context)

        cached = await self.cache.get(key, now)
        if cached is not None:
            return cached.permissions

        started = time.perf_counter()
        permissions = await self.compute(db, user_id, context, now)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        expires_at = await self.expiry(db, user_id, context.tenant_id, now)

        await self.cache.set(
            CachedPermissions(
                key=key,
                user_id=user_id,
                tenant_id=context.tenant_id,
                context=context.cache_fragment(),
                permissions=permissions,
                computed_at=now,
                expires_at=expires_at,
                computation_ms=elapsed_ms,
            )
        )
        log.debug(f"Permission set for user {user_id} computed in {elapsed_ms}ms, cached until {expires_at}")
        return permissions

    async def has_permission(
        self,
        db: AsyncSession,
        user_id: str,
        permission_code: str,
        context: OrgContext,
        resource_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Decide a single permission.

        Absent and denied entries are False; allowed entries are True only if
        their conditions hold. Resolution failures other than hierarchy
        corruption are logged and answered with False.

        Raises:
            NotFoundError: if ``permission_code`` is not in the catalog
            HierarchyIntegrityError: if a role chain is inconsistent
        """
        now = now or utcnow()
        try:
            permissions = await self.resolve(db, user_id, context, now)
        except HierarchyIntegrityError:
            raise
        except Exception:
            log.exception(f"Permission resolution failed for user {user_id}, denying {permission_code}")
            return False

        state = permissions.state(permission_code)
        if state == EntryState.ABSENT:
            if not await permission_exists(db, permission_code):
                raise NotFoundError("permission", permission_code)
            log.debug(f"User {user_id} denied {permission_code}: not granted")
            return False
        if state == EntryState.DENIED:
            log.debug(f"User {user_id} denied {permission_code}: explicit deny")
            return False

        entry = permissions.get(permission_code)
        try:
            allowed = await self.evaluator.evaluate(
                entry.conditions,
                ConstraintContext(
                    now=now,
                    user_id=user_id,
                    unit_id=context.unit_id,
                    location_id=context.location_id,
                    region_id=context.region_id,
                    resource_id=resource_id,
                    resource_type=entry.resource_type,
                ),
            )
        except Exception:
            log.exception(f"Condition evaluation failed for user {user_id}, denying {permission_code}")
            return False
        log.debug(f"User {user_id} {'granted' if allowed else 'denied'} {permission_code} in tenant {context.tenant_id}")
        return allowed
