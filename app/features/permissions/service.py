"""
Access-control mutations.

Every operation here commits its change together with an audit log row
and then invalidates the tenant's cached permission sets before
returning, so a caller never observes a stale decision after a
successful write.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions import assignments, bindings, overrides
from app.features.permissions.cache import PermissionCache
from app.features.permissions.exceptions import ForbiddenError, InvalidOperationError
from app.features.permissions.hierarchy import HierarchyStore
from app.features.permissions.models import (
    AuditLog,
    OrganizationalTier,
    OrganizationalUnit,
    PermissionEffect,
    PermissionOverride,
    Role,
    RolePermission,
    UserRoleAssignment,
)
from app.features.permissions.seed import DealerType, seed_tenant
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is performing a mutation, for the audit trail."""
    user_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class BindingChange:
    permission_code: str
    effect: PermissionEffect
    conditions: Optional[Dict[str, Any]] = None


# ============================================================================
# Audit Logging
# ============================================================================

def create_audit_log(
    db: AsyncSession,
    actor: Actor,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit log entry to the current transaction.

    The entry is committed (or rolled back) with the change it describes.
    """
    audit_log = AuditLog(
        user_id=actor.user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        tenant_id=tenant_id,
        details=details,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
    )
    db.add(audit_log)

    log.info(
        f"Audit: user={actor.user_id} action={action} resource={resource_type}:{resource_id} tenant={tenant_id}"
    )
    return audit_log


async def list_audit_logs(
    db: AsyncSession,
    tenant_id: str,
    resource_type: Optional[str] = None,
    user_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> list[AuditLog]:
    stmt = select(AuditLog).where(AuditLog.tenant_id == tenant_id)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


class AccessControlService:
    """Mutating operations over units, roles, bindings, assignments and overrides."""

    def __init__(
        self,
        cache: PermissionCache,
        units: HierarchyStore[OrganizationalUnit],
        roles: HierarchyStore[Role],
        review_days: int = config.OVERRIDE_REVIEW_DAYS,
    ):
        self.cache = cache
        self.units = units
        self.roles = roles
        self.review_days = review_days

    async def _invalidate(self, tenant_id: str) -> None:
        await self.cache.invalidate_tenant(tenant_id)

    # ------------------------------------------------------------------
    # Organizational units
    # ------------------------------------------------------------------

    async def create_unit(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        name: str,
        code: str,
        tier: OrganizationalTier,
        parent_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> OrganizationalUnit:
        unit = OrganizationalUnit(name=name, code=code, tier=tier, description=description, is_active=True)
        async with self.units.edit(db, tenant_id) as editor:
            if parent_id is not None and not editor.row(parent_id).is_active:
                raise InvalidOperationError(f"parent unit {parent_id} is deactivated")
            editor.insert(unit, parent_id)
            create_audit_log(
                db, actor, "create", "organizational_unit", unit.id, tenant_id,
                {"code": code, "tier": tier.value, "parent_id": parent_id},
            )
        return unit

    async def move_unit(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        unit_id: str,
        new_parent_id: Optional[str],
    ) -> OrganizationalUnit:
        async with self.units.edit(db, tenant_id) as editor:
            previous_parent = editor.row(unit_id).parent_id
            editor.move(unit_id, new_parent_id)
            create_audit_log(
                db, actor, "move", "organizational_unit", unit_id, tenant_id,
                {"from_parent_id": previous_parent, "to_parent_id": new_parent_id},
            )
        await self._invalidate(tenant_id)
        return editor.row(unit_id)

    async def deactivate_unit(self, db: AsyncSession, actor: Actor, tenant_id: str, unit_id: str) -> list[str]:
        """Soft-deactivate a unit and everything below it; returns the affected ids."""
        unit = await self.units.get(db, unit_id, tenant_id)
        affected = [unit] + await self.units.descendants_of(db, unit_id)
        for node in affected:
            node.is_active = False
        create_audit_log(
            db, actor, "deactivate", "organizational_unit", unit_id, tenant_id,
            {"deactivated": [node.id for node in affected]},
        )
        await db.commit()
        await self._invalidate(tenant_id)
        return [node.id for node in affected]

    # ------------------------------------------------------------------
    # Roles and bindings
    # ------------------------------------------------------------------

    async def create_role(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        name: str,
        code: str,
        hierarchy_level: int,
        tier: OrganizationalTier,
        department: str,
        parent_id: Optional[str] = None,
        organizational_unit_id: Optional[str] = None,
        description: Optional[str] = None,
        permission_codes: Iterable[str] = (),
        is_customizable: bool = True,
    ) -> Role:
        """
        Create a role under ``parent_id`` (or as a tenant root) with initial ALLOW bindings.

        Raises:
            NotFoundError: if the parent, unit or any permission code does not exist
            InvalidOperationError: if the code is already used in the tenant
        """
        if organizational_unit_id is not None:
            await self.units.get(db, organizational_unit_id, tenant_id)

        role = Role(
            organizational_unit_id=organizational_unit_id,
            name=name,
            code=code,
            description=description,
            hierarchy_level=hierarchy_level,
            tier=tier,
            department=department,
            is_system_role=False,
            is_customizable=is_customizable,
            created_by=actor.user_id,
        )
        permission_codes = list(permission_codes)
        async with self.roles.edit(db, tenant_id) as editor:
            if any(existing.code == code for existing in editor.rows.values()):
                raise InvalidOperationError(f"role code {code} already exists in tenant {tenant_id}")
            editor.insert(role, parent_id)
            await db.flush()
            await bindings.grant_permissions(db, role.id, permission_codes)
            create_audit_log(
                db, actor, "create", "role", role.id, tenant_id,
                {"code": code, "parent_id": parent_id, "permissions": permission_codes},
            )
        await self._invalidate(tenant_id)
        return role

    async def move_role(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        role_id: str,
        new_parent_id: Optional[str],
    ) -> Role:
        async with self.roles.edit(db, tenant_id) as editor:
            previous_parent = editor.row(role_id).parent_id
            editor.move(role_id, new_parent_id)
            create_audit_log(
                db, actor, "move", "role", role_id, tenant_id,
                {"from_parent_id": previous_parent, "to_parent_id": new_parent_id},
            )
        await self._invalidate(tenant_id)
        return editor.row(role_id)

    async def customize_role(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        role_id: str,
        changes: Iterable[BindingChange],
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[RolePermission]:
        """
        Replace bindings on a customizable role.

        Raises:
            ForbiddenError: if the role is not customizable
            NotFoundError: if the role or any permission code does not exist
        """
        role = await self.roles.get(db, role_id, tenant_id)
        if not role.is_customizable:
            raise ForbiddenError(f"role {role.code} is not customizable")

        changes = list(changes)
        updated = [
            await bindings.customize_binding(
                db, role_id, change.permission_code, change.effect, actor.user_id,
                reason=reason, conditions=change.conditions, now=now,
            )
            for change in changes
        ]
        create_audit_log(
            db, actor, "customize", "role", role_id, tenant_id,
            {
                "reason": reason,
                "changes": [
                    {"permission_code": c.permission_code, "effect": c.effect.value, "conditions": c.conditions}
                    for c in changes
                ],
            },
        )
        await db.commit()
        await self._invalidate(tenant_id)
        return updated

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        user_id: str,
        role_id: str,
        organizational_unit_id: Optional[str] = None,
        reason: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_until: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        assignment = await assignments.assign_role(
            db, user_id, role_id, tenant_id, actor.user_id,
            organizational_unit_id=organizational_unit_id,
            reason=reason,
            effective_from=effective_from,
            effective_until=effective_until,
        )
        create_audit_log(
            db, actor, "assign", "user_role", assignment.id, tenant_id,
            {"user_id": user_id, "role_id": role_id, "organizational_unit_id": organizational_unit_id},
        )
        await db.commit()
        await self._invalidate(tenant_id)
        return assignment

    async def deactivate_assignment(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        assignment_id: str,
        user_id: Optional[str] = None,
    ) -> UserRoleAssignment:
        assignment = await assignments.deactivate_assignment(db, assignment_id, tenant_id, user_id)
        create_audit_log(
            db, actor, "unassign", "user_role", assignment_id, tenant_id,
            {"user_id": assignment.user_id, "role_id": assignment.role_id},
        )
        await db.commit()
        await self._invalidate(tenant_id)
        return assignment

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    async def create_override(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        user_id: str,
        permission_code: str,
        effect: PermissionEffect,
        override_reason: Optional[str],
        business_justification: Optional[str],
        organizational_unit_id: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_until: Optional[datetime] = None,
        requires_review: bool = True,
        now: Optional[datetime] = None,
    ) -> PermissionOverride:
        override = await overrides.create_override(
            db, user_id, permission_code, tenant_id, effect,
            override_reason, business_justification, actor.user_id,
            organizational_unit_id=organizational_unit_id,
            effective_from=effective_from,
            effective_until=effective_until,
            requires_review=requires_review,
            review_days=self.review_days,
            now=now,
        )
        create_audit_log(
            db, actor, "create", "permission_override", override.id, tenant_id,
            {
                "user_id": user_id,
                "permission_code": permission_code,
                "effect": effect.value,
                "reason": override.override_reason,
                "pending_approval": override.is_pending_approval,
            },
        )
        await db.commit()
        await self._invalidate(tenant_id)
        return override

    async def approve_override(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        override_id: str,
        now: Optional[datetime] = None,
    ) -> PermissionOverride:
        override = await overrides.approve_override(db, override_id, tenant_id, actor.user_id, now)
        create_audit_log(db, actor, "approve", "permission_override", override_id, tenant_id)
        await db.commit()
        await self._invalidate(tenant_id)
        return override

    async def review_override(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        override_id: str,
        now: Optional[datetime] = None,
    ) -> PermissionOverride:
        override = await overrides.review_override(db, override_id, tenant_id, self.review_days, now)
        create_audit_log(
            db, actor, "review", "permission_override", override_id, tenant_id,
            {"next_review_date": override.next_review_date.isoformat() if override.next_review_date else None},
        )
        await db.commit()
        return override

    async def revoke_override(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        override_id: str,
    ) -> PermissionOverride:
        override = await overrides.revoke_override(db, override_id, tenant_id)
        create_audit_log(db, actor, "revoke", "permission_override", override_id, tenant_id)
        await db.commit()
        await self._invalidate(tenant_id)
        return override

    # ------------------------------------------------------------------
    # Tenant bootstrap and maintenance
    # ------------------------------------------------------------------

    async def seed_tenant(
        self,
        db: AsyncSession,
        actor: Actor,
        tenant_id: str,
        dealer_type: DealerType = DealerType.STANDARD,
    ) -> dict:
        """
        Seed an empty tenant with the headquarters unit and a role template.

        Raises:
            InvalidOperationError: if the tenant is already initialized
        """
        async with self.units.edit(db, tenant_id) as unit_editor:
            async with self.roles.edit(db, tenant_id) as role_editor:
                summary = await seed_tenant(db, unit_editor, role_editor, actor.user_id, dealer_type)
                create_audit_log(db, actor, "seed", "tenant", None, tenant_id, summary)
        await self._invalidate(tenant_id)
        return summary

    async def verify_hierarchy(self, db: AsyncSession, tenant_id: str) -> dict:
        """
        Raises:
            HierarchyIntegrityError: if either tree is inconsistent
        """
        return {
            "tenant_id": tenant_id,
            "organizational_units": await self.units.verify(db, tenant_id),
            "roles": await self.roles.verify(db, tenant_id),
        }
