"""
Per-user permission overrides with approval and periodic review.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.permissions.catalog import get_permission_by_code
from app.features.permissions.exceptions import ForbiddenError, InvalidOperationError, NotFoundError
from app.features.permissions.models import (
    OrganizationalUnit,
    Permission,
    PermissionEffect,
    PermissionOverride,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)


async def active_overrides(
    db: AsyncSession,
    user_id: str,
    tenant_id: str,
    unit_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[PermissionOverride]:
    """
    Overrides in force at ``now`` for the principal and scope.

    Tenant-wide overrides (no unit) always apply; unit overrides apply only
    when ``unit_id`` matches. Overrides still waiting for approval and
    overrides of deactivated catalog entries are excluded.
    """
    now = now or utcnow()
    stmt = (
        select(PermissionOverride)
        .join(Permission, Permission.id == PermissionOverride.permission_id)
        .where(
            PermissionOverride.user_id == user_id,
            PermissionOverride.tenant_id == tenant_id,
            PermissionOverride.is_active.is_(True),
            PermissionOverride.effective_from <= now,
            or_(
                PermissionOverride.effective_until.is_(None),
                PermissionOverride.effective_until >= now,
            ),
            Permission.is_active.is_(True),
        )
        .order_by(PermissionOverride.effective_from)
    )
    if unit_id is None:
        stmt = stmt.where(PermissionOverride.organizational_unit_id.is_(None))
    else:
        stmt = stmt.where(
            or_(
                PermissionOverride.organizational_unit_id.is_(None),
                PermissionOverride.organizational_unit_id == unit_id,
            )
        )
    result = await db.execute(stmt)
    return [override for override in result.scalars().all() if not override.is_pending_approval]


async def next_window_change(db: AsyncSession, user_id: str, tenant_id: str, now: datetime) -> Optional[datetime]:
    """Earliest moment not before ``now`` at which one of the user's overrides starts or lapses."""
    owned = (
        PermissionOverride.user_id == user_id,
        PermissionOverride.tenant_id == tenant_id,
        PermissionOverride.is_active.is_(True),
    )
    starts = await db.scalar(
        select(func.min(PermissionOverride.effective_from)).where(*owned, PermissionOverride.effective_from > now)
    )
    ends = await db.scalar(
        select(func.min(PermissionOverride.effective_until)).where(*owned, PermissionOverride.effective_until >= now)
    )
    return min((moment for moment in (starts, ends) if moment is not None), default=None)


async def get_override(db: AsyncSession, override_id: str, tenant_id: str) -> PermissionOverride:
    override = await db.get(PermissionOverride, override_id)
    if override is None or override.tenant_id != tenant_id:
        raise NotFoundError("permission override", override_id)
    return override


async def list_overrides(
    db: AsyncSession,
    tenant_id: str,
    user_id: Optional[str] = None,
    include_inactive: bool = False,
    due_for_review: bool = False,
    now: Optional[datetime] = None,
) -> list[PermissionOverride]:
    now = now or utcnow()
    stmt = select(PermissionOverride).where(PermissionOverride.tenant_id == tenant_id)
    if user_id:
        stmt = stmt.where(PermissionOverride.user_id == user_id)
    if not include_inactive:
        stmt = stmt.where(PermissionOverride.is_active.is_(True))
    if due_for_review:
        stmt = stmt.where(
            PermissionOverride.requires_review.is_(True),
            PermissionOverride.next_review_date <= now,
        )
    result = await db.execute(stmt.order_by(PermissionOverride.created_at.desc()))
    return list(result.scalars().all())


async def create_override(
    db: AsyncSession,
    user_id: str,
    permission_code: str,
    tenant_id: str,
    effect: PermissionEffect,
    override_reason: Optional[str],
    business_justification: Optional[str],
    requested_by: str,
    organizational_unit_id: Optional[str] = None,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
    requires_review: bool = True,
    review_days: int = config.OVERRIDE_REVIEW_DAYS,
    now: Optional[datetime] = None,
) -> PermissionOverride:
    """
    Record an override. Does not commit.

    Raises:
        ForbiddenError: if the reason or business justification is missing
        NotFoundError: if the permission code or unit is unknown
        InvalidOperationError: if the window ends before it starts
    """
    if not override_reason or not override_reason.strip():
        raise ForbiddenError("permission overrides require a reason")
    if not business_justification or not business_justification.strip():
        raise ForbiddenError("permission overrides require a business justification")

    permission = await get_permission_by_code(db, permission_code)

    if organizational_unit_id is not None:
        unit = await db.get(OrganizationalUnit, organizational_unit_id)
        if unit is None or unit.tenant_id != tenant_id:
            raise NotFoundError("organizational unit", organizational_unit_id)

    now = now or utcnow()
    effective_from = effective_from or now
    if effective_until is not None and effective_until <= effective_from:
        raise InvalidOperationError("effective_until must be after effective_from")

    override = PermissionOverride(
        user_id=user_id,
        permission_id=permission.id,
        permission=permission,
        tenant_id=tenant_id,
        organizational_unit_id=organizational_unit_id,
        effect=effect,
        override_reason=override_reason.strip(),
        business_justification=business_justification.strip(),
        requested_by=requested_by,
        effective_from=effective_from,
        effective_until=effective_until,
        requires_review=requires_review,
        next_review_date=now + timedelta(days=review_days) if requires_review else None,
        is_active=True,
    )
    db.add(override)
    await db.flush()

    if override.is_pending_approval:
        log.info(f"Override {override.id} for {permission_code} pending approval (user {user_id})")
    return override


async def approve_override(
    db: AsyncSession,
    override_id: str,
    tenant_id: str,
    approved_by: str,
    now: Optional[datetime] = None,
) -> PermissionOverride:
    override = await get_override(db, override_id, tenant_id)
    if not override.is_active:
        raise InvalidOperationError(f"permission override {override_id} has been revoked")
    if override.approved_by is not None:
        raise InvalidOperationError(f"permission override {override_id} is already approved")
    if approved_by == override.requested_by:
        raise ForbiddenError("an override cannot be approved by its requester")

    override.approved_by = approved_by
    override.approval_date = now or utcnow()
    await db.flush()
    return override


async def review_override(
    db: AsyncSession,
    override_id: str,
    tenant_id: str,
    review_days: int = config.OVERRIDE_REVIEW_DAYS,
    now: Optional[datetime] = None,
) -> PermissionOverride:
    """Record a periodic review and push the next one out by ``review_days``."""
    override = await get_override(db, override_id, tenant_id)
    if not override.is_active:
        raise InvalidOperationError(f"permission override {override_id} has been revoked")
    now = now or utcnow()
    override.last_review_date = now
    override.next_review_date = now + timedelta(days=review_days) if override.requires_review else None
    await db.flush()
    return override


async def revoke_override(db: AsyncSession, override_id: str, tenant_id: str) -> PermissionOverride:
    """Deactivate an override. Overrides are never deleted."""
    override = await get_override(db, override_id, tenant_id)
    override.is_active = False
    await db.flush()
    return override
