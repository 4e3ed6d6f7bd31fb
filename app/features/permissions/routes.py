"""
Access-control API routes.

Provides endpoints for permission decisions, the permission catalog, the
role hierarchy and its customization, role assignments, permission
overrides, organizational units and tenant bootstrap.
"""
from collections import defaultdict
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_admin_user, get_tenant_user
from app.features.users.models import User
from app.features.permissions import assignments, bindings, catalog, overrides
from app.features.permissions.cache import TieredPermissionCache
from app.features.permissions.dependencies import (
    get_actor,
    get_cache,
    get_org_context,
    get_resolver,
    get_service,
    require_permission,
)
from app.features.permissions.entries import EntryState, OrgContext
from app.features.permissions.models import (
    OrganizationalTier,
    OrganizationalUnit,
    Role,
    ScopeLevel,
)
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.schemas import (
    AssignmentCreate,
    AssignmentResponse,
    AuditLogListResponse,
    AuditLogResponse,
    EffectivePermissionsResponse,
    HierarchyVerifyResponse,
    MoveRequest,
    OverrideCreate,
    OverrideResponse,
    PermissionCatalogResponse,
    PermissionCheckResponse,
    PermissionResponse,
    RoleBindingResponse,
    RoleCreate,
    RoleCustomizeRequest,
    RoleDetailResponse,
    RoleListResponse,
    RoleResponse,
    SeedRequest,
    SeedResponse,
    StatusResponse,
    UnitCreate,
    UnitDeactivateResponse,
    UnitListResponse,
    UnitResponse,
    UnitTreeNode,
)
from app.features.permissions.service import AccessControlService, Actor, BindingChange, list_audit_logs
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

MANAGE_ROLES = "role.manage_permissions"
ASSIGN_ROLES = "user.create_location"
VIEW_AUDIT = "audit.view_company"

DB = Annotated[AsyncSession, Depends(get_db)]
Service = Annotated[AccessControlService, Depends(get_service)]
CurrentActor = Annotated[Actor, Depends(get_actor)]


# ============================================================================
# Status and Decisions
# ============================================================================

@router.get("/status", response_model=StatusResponse)
async def get_status(
    db: DB,
    cache: Annotated[TieredPermissionCache, Depends(get_cache)],
    current_user: User = Depends(get_tenant_user),
):
    """Whether the tenant has been seeded, plus hierarchy and cache statistics."""
    role_count = await db.scalar(select(func.count(Role.id)).where(Role.tenant_id == current_user.tenant_id))
    unit_count = await db.scalar(
        select(func.count(OrganizationalUnit.id)).where(OrganizationalUnit.tenant_id == current_user.tenant_id)
    )
    return StatusResponse(
        initialized=role_count > 0,
        user_id=current_user.id,
        tenant_id=current_user.tenant_id,
        total_roles=role_count,
        organizational_units=unit_count,
        cache=cache.stats(),
        cache_ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS,
    )


@router.get("/permissions/check", response_model=PermissionCheckResponse)
async def check_permission(
    db: DB,
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    context: Annotated[OrgContext, Depends(get_org_context)],
    permission_code: str = Query(..., min_length=1),
    resource_id: Optional[str] = None,
    current_user: User = Depends(get_tenant_user),
):
    """Decide one permission for the current user in the requested context."""
    allowed = await resolver.has_permission(db, current_user.id, permission_code, context, resource_id)
    permissions = await resolver.resolve(db, current_user.id, context)
    state = permissions.state(permission_code)
    entry = permissions.get(permission_code)

    reason = None
    if state == EntryState.ABSENT:
        reason = "Permission is not granted by any role or override"
    elif state == EntryState.DENIED:
        reason = f"Explicitly denied by {entry.source}"
    elif not allowed:
        reason = "Permission conditions are not met"

    return PermissionCheckResponse(
        permission_code=permission_code,
        has_permission=allowed,
        state=state,
        source=entry.source if entry else None,
        reason=reason,
    )


@router.get("/permissions/effective", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    db: DB,
    resolver: Annotated[PermissionResolver, Depends(get_resolver)],
    context: Annotated[OrgContext, Depends(get_org_context)],
    current_user: User = Depends(get_tenant_user),
):
    """Every resolved entry (allowed and denied) for the current user."""
    permissions = await resolver.resolve(db, current_user.id, context)
    return EffectivePermissionsResponse(
        user_id=current_user.id,
        tenant_id=context.tenant_id,
        unit_id=context.unit_id,
        permissions=list(permissions),
        allowed=permissions.allowed_codes(),
    )


# ============================================================================
# Permission Catalog
# ============================================================================

@router.get("/permissions", response_model=PermissionCatalogResponse)
async def list_permissions(
    db: DB,
    module: Optional[str] = None,
    resource_type: Optional[str] = None,
    scope_level: Optional[ScopeLevel] = None,
    search: Optional[str] = None,
    current_user: User = Depends(get_tenant_user),
):
    """List the permission catalog, also grouped by module."""
    permissions = await catalog.list_permissions(db, module, resource_type, scope_level, search)
    items = [PermissionResponse.model_validate(p) for p in permissions]
    by_module: dict[str, list[PermissionResponse]] = defaultdict(list)
    for item in items:
        by_module[item.module].append(item)
    return PermissionCatalogResponse(permissions=items, by_module=dict(by_module), total=len(items))


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=RoleListResponse)
async def list_roles(
    db: DB,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    hierarchy_level: Optional[int] = None,
    department: Optional[str] = None,
    tier: Optional[OrganizationalTier] = None,
    search: Optional[str] = None,
    current_user: User = Depends(get_tenant_user),
):
    """List the tenant's roles in hierarchy order (ascending lft)."""
    conditions = [Role.tenant_id == current_user.tenant_id]
    if hierarchy_level is not None:
        conditions.append(Role.hierarchy_level == hierarchy_level)
    if department:
        conditions.append(Role.department == department.lower())
    if tier:
        conditions.append(Role.tier == tier)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Role.name.ilike(pattern), Role.code.ilike(pattern), Role.description.ilike(pattern)))

    total = await db.scalar(select(func.count(Role.id)).where(*conditions))
    result = await db.execute(select(Role).where(*conditions).order_by(Role.lft).offset(skip).limit(limit))
    return RoleListResponse(items=result.scalars().all(), total=total, skip=skip, limit=limit)


@router.get("/roles/{role_id}", response_model=RoleDetailResponse)
async def get_role(
    role_id: str,
    db: DB,
    service: Service,
    current_user: User = Depends(get_tenant_user),
):
    """Get a role with its own bindings, ancestor chain and active assignment count."""
    role = await service.roles.get(db, role_id, current_user.tenant_id)
    chain = await service.roles.ancestors_of(db, role_id)
    role_bindings = await bindings.list_role_bindings(db, role_id)

    detail = RoleDetailResponse.model_validate(role)
    detail.permissions = [
        RoleBindingResponse(
            permission_code=b.permission.code,
            permission_name=b.permission.name,
            effect=b.effect,
            conditions=b.conditions,
            is_customized=b.is_customized,
            customized_by=b.customized_by,
            customized_at=b.customized_at,
            customization_reason=b.customization_reason,
        )
        for b in role_bindings
    ]
    detail.inherits_from = [ancestor.code for ancestor in chain[:-1]]
    detail.active_assignments = await assignments.count_active_assignments(db, role_id)
    return detail


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    body: RoleCreate,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """Create a role under an optional parent role, with initial ALLOW bindings."""
    role = await service.create_role(
        db, actor, current_user.tenant_id,
        name=body.name,
        code=body.code,
        hierarchy_level=body.hierarchy_level,
        tier=body.tier,
        department=body.department,
        parent_id=body.parent_id,
        organizational_unit_id=body.organizational_unit_id,
        description=body.description,
        permission_codes=body.permissions,
        is_customizable=body.is_customizable,
    )
    await db.refresh(role)
    return role


@router.put("/roles/{role_id}/customize", response_model=List[RoleBindingResponse])
async def customize_role(
    role_id: str,
    body: RoleCustomizeRequest,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """Replace bindings on a customizable role."""
    updated = await service.customize_role(
        db, actor, current_user.tenant_id, role_id,
        [BindingChange(c.permission_code, c.effect, c.conditions) for c in body.changes],
        reason=body.reason,
    )
    return [
        RoleBindingResponse(
            permission_code=b.permission.code,
            permission_name=b.permission.name,
            effect=b.effect,
            conditions=b.conditions,
            is_customized=b.is_customized,
            customized_by=b.customized_by,
            customized_at=b.customized_at,
            customization_reason=b.customization_reason,
        )
        for b in updated
    ]


@router.post("/roles/{role_id}/move", response_model=RoleResponse)
async def move_role(
    role_id: str,
    body: MoveRequest,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """Re-parent a role (and its subtree) within the tenant's role hierarchy."""
    role = await service.move_role(db, actor, current_user.tenant_id, role_id, body.new_parent_id)
    await db.refresh(role)
    return role


# ============================================================================
# Role Assignment Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=List[AssignmentResponse])
async def list_user_roles(
    user_id: str,
    db: DB,
    include_inactive: bool = False,
    current_user: User = Depends(get_tenant_user),
):
    """List a user's role assignments in the caller's tenant."""
    return await assignments.list_user_assignments(db, user_id, current_user.tenant_id, include_inactive)


@router.post("/users/{user_id}/roles", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_role_to_user(
    user_id: str,
    body: AssignmentCreate,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(ASSIGN_ROLES)),
):
    """Assign a role to a user, optionally scoped to a unit and a time window."""
    return await service.assign_role(
        db, actor, current_user.tenant_id, user_id, body.role_id,
        organizational_unit_id=body.organizational_unit_id,
        reason=body.reason,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
    )


@router.delete("/users/{user_id}/roles/{assignment_id}", response_model=AssignmentResponse)
async def deactivate_user_role(
    user_id: str,
    assignment_id: str,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(ASSIGN_ROLES)),
):
    """Deactivate a role assignment. Assignments are kept for the audit trail."""
    return await service.deactivate_assignment(db, actor, current_user.tenant_id, assignment_id, user_id)


# ============================================================================
# Permission Override Routes
# ============================================================================

@router.post("/permission-overrides", response_model=OverrideResponse, status_code=status.HTTP_201_CREATED)
async def create_permission_override(
    body: OverrideCreate,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """
    Record a per-user override.

    Overrides granting approval-gated permissions stay pending until another
    manager approves them through the approve endpoint.
    """
    return await service.create_override(
        db, actor, current_user.tenant_id, body.user_id, body.permission_code, body.effect,
        body.override_reason, body.business_justification,
        organizational_unit_id=body.organizational_unit_id,
        effective_from=body.effective_from,
        effective_until=body.effective_until,
        requires_review=body.requires_review,
    )


@router.get("/permission-overrides", response_model=List[OverrideResponse])
async def list_permission_overrides(
    db: DB,
    user_id: Optional[str] = None,
    include_inactive: bool = False,
    due_for_review: bool = False,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """List overrides, optionally only those due for periodic review."""
    return await overrides.list_overrides(
        db, current_user.tenant_id, user_id=user_id,
        include_inactive=include_inactive, due_for_review=due_for_review,
    )


@router.post("/permission-overrides/{override_id}/approve", response_model=OverrideResponse)
async def approve_permission_override(
    override_id: str,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    return await service.approve_override(db, actor, current_user.tenant_id, override_id)


@router.post("/permission-overrides/{override_id}/review", response_model=OverrideResponse)
async def review_permission_override(
    override_id: str,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    return await service.review_override(db, actor, current_user.tenant_id, override_id)


@router.delete("/permission-overrides/{override_id}", response_model=OverrideResponse)
async def revoke_permission_override(
    override_id: str,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    return await service.revoke_override(db, actor, current_user.tenant_id, override_id)


# ============================================================================
# Organizational Unit Routes
# ============================================================================

def _build_tree(units: list[OrganizationalUnit]) -> list[UnitTreeNode]:
    nodes = {unit.id: UnitTreeNode.model_validate(unit) for unit in units}
    roots = []
    # Units arrive in ascending lft, so parents are seen before children
    for unit in units:
        node = nodes[unit.id]
        parent = nodes.get(unit.parent_id) if unit.parent_id else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


@router.get("/organizational-units", response_model=UnitListResponse)
async def list_organizational_units(
    db: DB,
    include_inactive: bool = False,
    current_user: User = Depends(get_tenant_user),
):
    """List the tenant's units flat (ascending lft) and as a tree."""
    stmt = select(OrganizationalUnit).where(OrganizationalUnit.tenant_id == current_user.tenant_id)
    if not include_inactive:
        stmt = stmt.where(OrganizationalUnit.is_active.is_(True))
    result = await db.execute(stmt.order_by(OrganizationalUnit.lft))
    units = list(result.scalars().all())
    return UnitListResponse(units=units, tree=_build_tree(units))


@router.post("/organizational-units", response_model=UnitResponse, status_code=status.HTTP_201_CREATED)
async def create_organizational_unit(
    body: UnitCreate,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    return await service.create_unit(
        db, actor, current_user.tenant_id, body.name, body.code, body.tier,
        parent_id=body.parent_id, description=body.description,
    )


@router.post("/organizational-units/{organizational_unit_id}/move", response_model=UnitResponse)
async def move_organizational_unit(
    organizational_unit_id: str,
    body: MoveRequest,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    return await service.move_unit(db, actor, current_user.tenant_id, organizational_unit_id, body.new_parent_id)


@router.delete("/organizational-units/{organizational_unit_id}", response_model=UnitDeactivateResponse)
async def deactivate_organizational_unit(
    organizational_unit_id: str,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """Soft-deactivate a unit and its descendants."""
    deactivated = await service.deactivate_unit(db, actor, current_user.tenant_id, organizational_unit_id)
    return UnitDeactivateResponse(deactivated=deactivated)


# ============================================================================
# Maintenance Routes
# ============================================================================

@router.post("/hierarchy/verify", response_model=HierarchyVerifyResponse)
async def verify_hierarchy(
    db: DB,
    service: Service,
    current_user: User = Depends(require_permission(MANAGE_ROLES)),
):
    """Validate the nested-set coordinates of both of the tenant's trees."""
    return await service.verify_hierarchy(db, current_user.tenant_id)


@router.post("/seed", response_model=SeedResponse, status_code=status.HTTP_201_CREATED)
async def seed_tenant(
    body: SeedRequest,
    db: DB,
    service: Service,
    actor: CurrentActor,
    current_user: User = Depends(get_current_admin_user),
):
    """Initialize the tenant with the headquarters unit, catalog and a role template (admin only)."""
    return await service.seed_tenant(db, actor, current_user.tenant_id, body.dealer_type)


@router.get("/audit-logs", response_model=AuditLogListResponse)
async def get_audit_logs(
    db: DB,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    resource_type: Optional[str] = None,
    user_id: Optional[str] = None,
    current_user: User = Depends(require_permission(VIEW_AUDIT)),
):
    """List the tenant's access-control audit trail, newest first."""
    items = await list_audit_logs(db, current_user.tenant_id, resource_type, user_id, skip, limit)
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(item) for item in items],
        skip=skip,
        limit=limit,
    )
