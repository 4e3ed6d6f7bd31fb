"""
Wiring and FastAPI dependencies for access control.

Implements:
- Process-wide construction of the cache, hierarchy stores, resolver and service
- Organizational context extraction from the request
- ``require_permission`` route protection backed by the resolver
"""
from typing import Annotated, Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.core.database.engine import get_db
from app.features.permissions.cache import (
    DatabasePermissionCache,
    MemoryPermissionCache,
    TieredPermissionCache,
)
from app.features.permissions.conditions import ConstraintEvaluator
from app.features.permissions.entries import OrgContext
from app.features.permissions.hierarchy import HierarchyStore
from app.features.permissions.models import OrganizationalUnit, Role
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.service import AccessControlService, Actor
from app.features.users.dependencies import get_tenant_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Process-wide wiring
# ============================================================================

def init_access_control(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    l2_enabled: bool = config.PERMISSION_CACHE_L2_ENABLED,
    ttl_seconds: int = config.PERMISSION_CACHE_TTL_SECONDS,
) -> None:
    """
    Build the shared access-control objects and attach them to ``app.state``.

    The cache and the hierarchy stores (with their per-tenant locks) must be
    shared by every request in the process, so this runs once at startup.
    """
    cache = TieredPermissionCache(
        MemoryPermissionCache(),
        DatabasePermissionCache(session_factory) if l2_enabled else None,
    )
    units = HierarchyStore(OrganizationalUnit, "organizational unit")
    roles = HierarchyStore(Role, "role")

    app.state.permission_cache = cache
    app.state.constraint_evaluator = ConstraintEvaluator()
    app.state.resolver = PermissionResolver(cache, roles, app.state.constraint_evaluator, ttl_seconds)
    app.state.access_control = AccessControlService(cache, units, roles)
    log.info(f"Access control initialized (L2 cache {'enabled' if l2_enabled else 'disabled'}, ttl={ttl_seconds}s)")


def get_resolver(request: Request) -> PermissionResolver:
    return request.app.state.resolver


def get_service(request: Request) -> AccessControlService:
    return request.app.state.access_control


def get_cache(request: Request) -> TieredPermissionCache:
    return request.app.state.permission_cache


# ============================================================================
# Request context
# ============================================================================

async def get_org_context(
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_tenant_user)],
    unit_id: Annotated[Optional[str], Query(description="Organizational unit the caller acts in")] = None,
    location_id: Annotated[Optional[str], Query(description="Location unit for location constraints")] = None,
    region_id: Annotated[Optional[str], Query(description="Region unit")] = None,
) -> OrgContext:
    """
    Organizational context of the request; the tenant always comes from the principal.

    Raises:
        HTTPException: 404 if a given unit, location or region is not a unit of the caller's tenant
    """
    requested = {unit_id, location_id, region_id} - {None}
    if requested:
        found = await db.scalars(
            select(OrganizationalUnit.id).where(
                OrganizationalUnit.id.in_(requested),
                OrganizationalUnit.tenant_id == user.tenant_id,
            )
        )
        unknown = requested - set(found)
        if unknown:
            log.info(f"User {user.id} sent context units {sorted(unknown)} outside tenant {user.tenant_id}")
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Organizational unit not found: {sorted(unknown)[0]}"
            )
    return OrgContext(
        tenant_id=user.tenant_id,
        unit_id=unit_id,
        location_id=location_id,
        region_id=region_id,
    )


def get_actor(request: Request, user: Annotated[User, Depends(get_tenant_user)]) -> Actor:
    return Actor(
        user_id=user.id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(permission_code: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/roles")
        async def create_role(
            user: User = Depends(require_permission("role.manage_permissions"))
        ):
            # User holds role.manage_permissions in the requested context
            pass

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        HTTPException: 403 if user doesn't have permission
    """
    async def permission_dependency(
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_tenant_user)],
        context: Annotated[OrgContext, Depends(get_org_context)],
        resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    ) -> User:
        if not await resolver.has_permission(db, current_user.id, permission_code, context):
            log.info(f"User {current_user.id} denied {permission_code} in tenant {context.tenant_id}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_code}"
            )
        return current_user

    return permission_dependency
