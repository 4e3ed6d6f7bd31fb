"""
Time-bounded user role assignments.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.exceptions import InvalidOperationError, NotFoundError
from app.features.permissions.models import OrganizationalUnit, Role, UserRoleAssignment
from app.utils import get_logger, utcnow


log = get_logger(__name__)


def _effective_at(now: datetime):
    return (
        UserRoleAssignment.is_active.is_(True),
        UserRoleAssignment.effective_from <= now,
        or_(
            UserRoleAssignment.effective_until.is_(None),
            UserRoleAssignment.effective_until >= now,
        ),
    )


async def active_assignments(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    unit_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[UserRoleAssignment]:
    """
    Assignments of ``user_id`` in ``tenant_id`` that are active at ``now``.

    When ``unit_id`` is given only assignments made in exactly that unit
    are returned.
    """
    now = now or utcnow()
    stmt = select(UserRoleAssignment).where(
        UserRoleAssignment.user_id == user_id,
        UserRoleAssignment.tenant_id == tenant_id,
        *_effective_at(now),
    )
    if unit_id is not None:
        stmt = stmt.where(UserRoleAssignment.organizational_unit_id == unit_id)
    result = await db.execute(stmt.order_by(UserRoleAssignment.effective_from))
    return list(result.scalars().all())


async def next_window_change(db: AsyncSession, user_id: str, tenant_id: str, now: datetime) -> Optional[datetime]:
    """
    Earliest ``effective_from`` after ``now`` or ``effective_until`` not before
    ``now`` among the user's assignments, i.e. when the active set may next change.
    """
    owned = (
        UserRoleAssignment.user_id == user_id,
        UserRoleAssignment.tenant_id == tenant_id,
        UserRoleAssignment.is_active.is_(True),
    )
    starts = await db.scalar(
        select(func.min(UserRoleAssignment.effective_from)).where(*owned, UserRoleAssignment.effective_from > now)
    )
    ends = await db.scalar(
        select(func.min(UserRoleAssignment.effective_until)).where(*owned, UserRoleAssignment.effective_until >= now)
    )
    return min((moment for moment in (starts, ends) if moment is not None), default=None)


async def list_user_assignments(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    include_inactive: bool = False,
) -> list[UserRoleAssignment]:
    stmt = select(UserRoleAssignment).where(
        UserRoleAssignment.user_id == user_id,
        UserRoleAssignment.tenant_id == tenant_id,
    )
    if not include_inactive:
        stmt = stmt.where(UserRoleAssignment.is_active.is_(True))
    result = await db.execute(stmt.order_by(UserRoleAssignment.effective_from))
    return list(result.scalars().all())


async def count_active_assignments(db: AsyncSession, role_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        select(func.count(UserRoleAssignment.id)).where(
            UserRoleAssignment.role_id == role_id,
            *_effective_at(now),
        )
    )
    return result.scalar_one()


async def assign_role(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    tenant_id: str,
    assigned_by: str,
    organizational_unit_id: Optional[str] = None,
    reason: Optional[str] = None,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
) -> UserRoleAssignment:
    """
    Add an assignment. Does not commit.

    Raises:
        NotFoundError: if the role or unit is not part of the tenant
        InvalidOperationError: if the window ends before it starts
    """
    role = await db.get(Role, role_id)
    if role is None or role.tenant_id != tenant_id:
        raise NotFoundError("role", role_id)

    if organizational_unit_id is not None:
        unit = await db.get(OrganizationalUnit, organizational_unit_id)
        if unit is None or unit.tenant_id != tenant_id:
            raise NotFoundError("organizational unit", organizational_unit_id)
        if not unit.is_active:
            raise InvalidOperationError(f"organizational unit {organizational_unit_id} is deactivated")

    effective_from = effective_from or utcnow()
    if effective_until is not None and effective_until <= effective_from:
        raise InvalidOperationError("effective_until must be after effective_from")

    assignment = UserRoleAssignment(
        user_id=user_id,
        role_id=role_id,
        role=role,
        tenant_id=tenant_id,
        organizational_unit_id=organizational_unit_id,
        assigned_by=assigned_by,
        assignment_reason=reason,
        effective_from=effective_from,
        effective_until=effective_until,
        is_active=True,
    )
    db.add(assignment)
    await db.flush()
    log.debug(f"Assigned role {role.code} to user {user_id} in tenant {tenant_id}")
    return assignment


async def deactivate_assignment(
    db: AsyncSession,
    assignment_id: str,
    tenant_id: str,
    user_id: Optional[str] = None,
) -> UserRoleAssignment:
    """Mark an assignment inactive. Assignments are never deleted. Does not commit."""
    assignment = await db.get(UserRoleAssignment, assignment_id)
    if assignment is None or assignment.tenant_id != tenant_id:
        raise NotFoundError("role assignment", assignment_id)
    if user_id is not None and assignment.user_id != user_id:
        raise NotFoundError("role assignment", assignment_id)
    assignment.is_active = False
    await db.flush()
    return assignment
