"""
Pydantic schemas for the access-control API.

Request and response models for the permission catalog, roles, role
assignments, permission overrides, organizational units and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.entries import EffectivePermission, EntryState
from app.features.permissions.models import (
    MAX_HIERARCHY_LEVEL,
    MIN_HIERARCHY_LEVEL,
    OrganizationalTier,
    PermissionEffect,
    RiskLevel,
    ScopeLevel,
)
from app.features.permissions.seed import DealerType


def _normalize_code(v: str) -> str:
    if not v.replace('_', '').isalnum():
        raise ValueError('Code must contain only alphanumeric characters and underscores')
    return v.upper()


# ============================================================================
# Status and Decision Schemas
# ============================================================================

class StatusResponse(BaseModel):
    initialized: bool
    user_id: str
    tenant_id: str
    total_roles: int
    organizational_units: int
    cache: Dict[str, Any]
    cache_ttl_seconds: int


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    permission_code: str
    has_permission: bool
    state: EntryState
    source: Optional[str] = None
    reason: Optional[str] = None


class EffectivePermissionsResponse(BaseModel):
    """All resolved entries for a principal in one organizational context."""
    user_id: str
    tenant_id: str
    unit_id: Optional[str] = None
    permissions: List[EffectivePermission] = []
    allowed: List[str] = []


# ============================================================================
# Catalog Schemas
# ============================================================================

class PermissionResponse(BaseModel):
    """Schema for permission catalog entry."""
    id: str
    name: str
    code: str
    description: Optional[str]
    module: str
    resource_type: str
    action: str
    scope_level: ScopeLevel
    risk_level: RiskLevel
    requires_approval: bool
    requires_mfa: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PermissionCatalogResponse(BaseModel):
    permissions: List[PermissionResponse]
    by_module: Dict[str, List[PermissionResponse]]
    total: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleCreate(BaseModel):
    """Schema for creating a new role."""
    name: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=1, max_length=50, description="Unique per tenant, e.g. 'SALES_REP'")
    description: Optional[str] = Field(None, max_length=1000)
    hierarchy_level: int = Field(..., ge=MIN_HIERARCHY_LEVEL, le=MAX_HIERARCHY_LEVEL)
    tier: OrganizationalTier
    department: str = Field(..., min_length=1, max_length=50)
    parent_id: Optional[str] = Field(None, description="Role whose permissions this role inherits (null for a root role)")
    organizational_unit_id: Optional[str] = None
    permissions: List[str] = Field(default_factory=list, description="Catalog codes granted with ALLOW")
    is_customizable: bool = True

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _normalize_code(v)

    @field_validator('department')
    @classmethod
    def department_lowercase(cls, v: str) -> str:
        """Ensure department is lowercase."""
        return v.lower()


class RoleResponse(BaseModel):
    """Schema for role response."""
    id: str
    tenant_id: str
    parent_id: Optional[str]
    organizational_unit_id: Optional[str]
    name: str
    code: str
    description: Optional[str]
    hierarchy_level: int
    tier: OrganizationalTier
    department: str
    is_system_role: bool
    is_customizable: bool
    lft: int
    rgt: int
    depth: int
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleListResponse(BaseModel):
    items: List[RoleResponse]
    total: int
    skip: int
    limit: int


class RoleBindingResponse(BaseModel):
    permission_code: str
    permission_name: str
    effect: PermissionEffect
    conditions: Optional[Dict[str, Any]] = None
    is_customized: bool
    customized_by: Optional[str] = None
    customized_at: Optional[datetime] = None
    customization_reason: Optional[str] = None


class RoleDetailResponse(RoleResponse):
    """Role with its own bindings, its ancestor chain and the number of active assignments."""
    permissions: List[RoleBindingResponse] = []
    inherits_from: List[str] = Field(default_factory=list, description="Ancestor role codes, root first")
    active_assignments: int = 0


class BindingChangeRequest(BaseModel):
    permission_code: str
    effect: PermissionEffect
    conditions: Optional[Dict[str, Any]] = Field(None, description="e.g. {\"time_between\": [\"08:00\", \"18:00\"]}")


class RoleCustomizeRequest(BaseModel):
    changes: List[BindingChangeRequest] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=1000)


class MoveRequest(BaseModel):
    """Re-parent a role or unit; null moves it to the tenant root."""
    new_parent_id: Optional[str] = None


# ============================================================================
# Assignment Schemas
# ============================================================================

class RoleSummary(BaseModel):
    id: str
    code: str
    name: str
    hierarchy_level: int

    model_config = ConfigDict(from_attributes=True)


class AssignmentCreate(BaseModel):
    """Schema for assigning a role to a user."""
    role_id: str
    organizational_unit_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=1000)
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = Field(None, description="Null for open-ended")


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    tenant_id: str
    organizational_unit_id: Optional[str]
    assigned_by: str
    assignment_reason: Optional[str]
    effective_from: datetime
    effective_until: Optional[datetime]
    is_active: bool
    role: RoleSummary

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Override Schemas
# ============================================================================

class PermissionSummary(BaseModel):
    id: str
    code: str
    name: str
    requires_approval: bool

    model_config = ConfigDict(from_attributes=True)


class OverrideCreate(BaseModel):
    """
    Schema for a per-user permission override.

    Reason and business justification are checked by the service so a
    missing value is reported as a policy refusal rather than a
    malformed request.
    """
    user_id: str
    permission_code: str
    effect: PermissionEffect
    override_reason: Optional[str] = Field(None, max_length=2000)
    business_justification: Optional[str] = Field(None, max_length=2000)
    organizational_unit_id: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    requires_review: bool = True


class OverrideResponse(BaseModel):
    id: str
    user_id: str
    tenant_id: str
    organizational_unit_id: Optional[str]
    effect: PermissionEffect
    override_reason: str
    business_justification: str
    requested_by: str
    approved_by: Optional[str]
    approval_date: Optional[datetime]
    effective_from: datetime
    effective_until: Optional[datetime]
    requires_review: bool
    next_review_date: Optional[datetime]
    last_review_date: Optional[datetime]
    is_active: bool
    is_pending_approval: bool
    permission: PermissionSummary

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Organizational Unit Schemas
# ============================================================================

class UnitCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., min_length=1, max_length=50)
    tier: OrganizationalTier
    parent_id: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _normalize_code(v)


class UnitResponse(BaseModel):
    id: str
    tenant_id: str
    parent_id: Optional[str]
    name: str
    code: str
    tier: OrganizationalTier
    description: Optional[str]
    is_active: bool
    lft: int
    rgt: int
    depth: int

    model_config = ConfigDict(from_attributes=True)


class UnitTreeNode(UnitResponse):
    children: List["UnitTreeNode"] = []


class UnitListResponse(BaseModel):
    units: List[UnitResponse]
    tree: List[UnitTreeNode]


class UnitDeactivateResponse(BaseModel):
    deactivated: List[str]


# ============================================================================
# Maintenance Schemas
# ============================================================================

class HierarchyVerifyResponse(BaseModel):
    tenant_id: str
    organizational_units: int
    roles: int
    status: str = "consistent"


class SeedRequest(BaseModel):
    dealer_type: DealerType = DealerType.STANDARD


class SeedResponse(BaseModel):
    tenant_id: str
    dealer_type: DealerType
    organizational_unit_id: str
    roles_created: int
    bindings_created: int
    permissions_created: int


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    tenant_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    skip: int
    limit: int
