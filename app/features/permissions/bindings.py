"""
Role-permission bindings.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.catalog import get_permission_by_code, get_permissions_by_codes
from app.features.permissions.models import Permission, PermissionEffect, RolePermission
from app.utils import get_logger, utcnow


log = get_logger(__name__)


async def bindings_for_roles(db: AsyncSession, role_ids: Iterable[str]) -> list[RolePermission]:
    """Bindings of the given roles whose catalog entry is active."""
    role_ids = set(role_ids)
    if not role_ids:
        return []
    result = await db.execute(
        select(RolePermission)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(
            RolePermission.role_id.in_(role_ids),
            Permission.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def list_role_bindings(db: AsyncSession, role_id: str) -> list[RolePermission]:
    result = await db.execute(
        select(RolePermission)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.module, Permission.code)
    )
    return list(result.scalars().all())


async def grant_permissions(
    db: AsyncSession,
    role_id: str,
    codes: Iterable[str],
    effect: PermissionEffect = PermissionEffect.ALLOW,
    conditions: Optional[Dict[str, Any]] = None,
) -> list[RolePermission]:
    """
    Bind catalog codes to a role. Codes already bound are skipped.

    Does not commit; callers commit together with the rest of their change.

    Raises:
        NotFoundError: if any code is not in the catalog
    """
    permissions = await get_permissions_by_codes(db, list(dict.fromkeys(codes)))

    result = await db.execute(select(RolePermission.permission_id).where(RolePermission.role_id == role_id))
    already_bound = set(result.scalars().all())

    created = []
    for permission in permissions:
        if permission.id in already_bound:
            continue
        binding = RolePermission(
            role_id=role_id,
            permission_id=permission.id,
            permission=permission,
            effect=effect,
            conditions=conditions,
        )
        db.add(binding)
        created.append(binding)

    await db.flush()
    return created


async def customize_binding(
    db: AsyncSession,
    role_id: str,
    permission_code: str,
    effect: PermissionEffect,
    customized_by: str,
    reason: Optional[str] = None,
    conditions: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> RolePermission:
    """
    Replace (or create) the binding of ``permission_code`` on ``role_id``.

    A binding exists at most once per (role, permission); customizing again
    overwrites effect, conditions and provenance.
    """
    permission = await get_permission_by_code(db, permission_code)
    result = await db.execute(
        select(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission.id,
        )
    )
    binding = result.scalar_one_or_none()
    if binding is None:
        binding = RolePermission(role_id=role_id, permission_id=permission.id, permission=permission)
        db.add(binding)

    binding.effect = effect
    binding.conditions = conditions
    binding.is_customized = True
    binding.customized_by = customized_by
    binding.customized_at = now or utcnow()
    binding.customization_reason = reason

    await db.flush()
    log.debug(f"Role {role_id} binding {permission_code} customized to {effect.value} by {customized_by}")
    return binding
