"""Helpers shared by the access-control tests."""

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import OrganizationalTier, Role
from app.features.permissions.service import AccessControlService, Actor


TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
ADMIN_ID = "admin-user"
USER_ID = "user-1"


async def make_role(
    service: AccessControlService,
    db: AsyncSession,
    actor: Actor,
    code: str,
    permissions: list[str] = (),
    parent: Role | None = None,
    level: int = 1,
    tenant_id: str = TENANT,
    is_customizable: bool = True,
) -> Role:
    return await service.create_role(
        db, actor, tenant_id,
        name=code.replace("_", " ").title(),
        code=code,
        hierarchy_level=level,
        tier=OrganizationalTier.LOCATION,
        department="sales",
        parent_id=parent.id if parent else None,
        permission_codes=list(permissions),
        is_customizable=is_customizable,
    )
