"""
Organizational unit, role, permission and override models for tenant-scoped RBAC.

This module implements the persisted state of the access-control core:
- Organizational units and roles, both encoded as per-tenant nested sets
- A global permission catalog
- Role-permission bindings with ALLOW/DENY effect and JSON conditions
- Time-bounded user role assignments and permission overrides
- The persisted (L2) tier of the effective-permission cache
- An audit log of every access-control mutation
"""
import enum
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String,
    ForeignKey,
    JSON,
    Text,
    Boolean,
    Integer,
    CheckConstraint,
    UniqueConstraint,
    Index,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from app.core.database.base import Base, TimestampMixin, UTCDateTime


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ulid.new())


# ============================================================================
# Enumerations
# ============================================================================

class OrganizationalTier(str, enum.Enum):
    """Tier of an organizational unit or role, widest first."""
    PLATFORM = "platform"
    COMPANY = "company"
    REGIONAL = "regional"
    LOCATION = "location"


class ScopeLevel(str, enum.Enum):
    """Breadth at which a permission applies."""
    OWN = "own"
    TEAM = "team"
    LOCATION = "location"
    REGIONAL = "regional"
    COMPANY = "company"
    PLATFORM = "platform"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PermissionEffect(str, enum.Enum):
    """Closed two-variant effect of a binding or override."""
    ALLOW = "ALLOW"
    DENY = "DENY"


# Role hierarchy levels: 1 = individual contributor ... 8 = platform administrator
MIN_HIERARCHY_LEVEL = 1
MAX_HIERARCHY_LEVEL = 8


# ============================================================================
# Hierarchy Models (nested set)
# ============================================================================

class NestedSetMixin:
    """
    Nested-set coordinates shared by organizational units and roles.

    Coordinates are unique per tenant: ``lft < rgt`` for every node and a
    node's descendants are exactly the nodes whose range lies strictly
    inside its own.
    """
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    lft: Mapped[int] = mapped_column(Integer, nullable=False)
    rgt: Mapped[int] = mapped_column(Integer, nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class OrganizationalUnit(Base, NestedSetMixin, TimestampMixin):
    """
    Organizational unit (platform, company, region or location).

    Units are never deleted while roles or assignments reference them;
    they are soft-deactivated instead.
    """
    __tablename__ = "organizational_units"
    __table_args__ = (
        Index("idx_org_units_nested_set", "tenant_id", "lft", "rgt"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    parent_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizational_units.id"),
        nullable=True,
        index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    tier: Mapped[OrganizationalTier] = mapped_column(SQLEnum(OrganizationalTier), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<OrganizationalUnit(id={self.id}, code={self.code!r}, tier={self.tier}, lft={self.lft}, rgt={self.rgt})>"


class Role(Base, NestedSetMixin, TimestampMixin):
    """
    Tenant role positioned in the role hierarchy.

    A role inherits every binding of its ancestors. Customization only
    changes bindings, never the role's identity.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),
        CheckConstraint(
            f"hierarchy_level BETWEEN {MIN_HIERARCHY_LEVEL} AND {MAX_HIERARCHY_LEVEL}",
            name="ck_roles_hierarchy_level"
        ),
        Index("idx_roles_nested_set", "tenant_id", "lft", "rgt"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    parent_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("roles.id"),
        nullable=True,
        index=True
    )
    organizational_unit_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizational_units.id"),
        nullable=True,
        index=True
    )

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    tier: Mapped[OrganizationalTier] = mapped_column(SQLEnum(OrganizationalTier), nullable=False)
    department: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_customizable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, code={self.code!r}, level={self.hierarchy_level}, lft={self.lft}, rgt={self.rgt})>"


# ============================================================================
# Catalog and Bindings
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Catalog entry for a single action on a resource type.

    Global (not tenant-scoped) and read-only at resolution time.
    Examples: lead.view_team, quote.approve_standard, financial.view_company
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    scope_level: Mapped[ScopeLevel] = mapped_column(SQLEnum(ScopeLevel), nullable=False, index=True)

    risk_level: Mapped[RiskLevel] = mapped_column(SQLEnum(RiskLevel), default=RiskLevel.LOW, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requires_mfa: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r}, scope={self.scope_level})>"


class RolePermission(Base, TimestampMixin):
    """
    Grant or denial of one catalog permission to one role.

    Unique per (role, permission); customization replaces the row's effect
    and records who/when/why.

    Example conditions:
        {"time_between": ["08:00", "18:00"], "day_of_week": ["monday", "friday"]}
        {"locations": ["<location unit id>"]}
        {"resource_owner": "lead"}
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_id", "permission_id", name="uq_role_permissions_role_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    effect: Mapped[PermissionEffect] = mapped_column(
        SQLEnum(PermissionEffect),
        default=PermissionEffect.ALLOW,
        nullable=False
    )
    conditions: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Customization provenance
    is_customized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    customized_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customized_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    customization_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id}, effect={self.effect})>"


# ============================================================================
# Assignments and Overrides
# ============================================================================

class UserRoleAssignment(Base, TimestampMixin):
    """
    Time-bounded binding of a principal to a role within a unit.

    ``effective_until`` of None means open-ended. Assignments are
    deactivated rather than deleted to keep the audit trail.
    """
    __tablename__ = "user_role_assignments"
    __table_args__ = (
        Index("idx_user_role_assignments_effective", "effective_from", "effective_until"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(String(26), ForeignKey("roles.id"), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organizational_unit_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizational_units.id"),
        nullable=True,
        index=True
    )

    assigned_by: Mapped[str] = mapped_column(String(64), nullable=False)
    assignment_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    effective_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    def __repr__(self) -> str:
        return f"<UserRoleAssignment(id={self.id}, user_id={self.user_id}, role_id={self.role_id}, active={self.is_active})>"


class PermissionOverride(Base, TimestampMixin):
    """
    Approved, time-bounded exception granting or denying one permission to one user.

    While active it supersedes every role-derived entry for the same code.
    """
    __tablename__ = "permission_overrides"
    __table_args__ = (
        Index("idx_permission_overrides_effective", "effective_from", "effective_until"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id"),
        nullable=False,
        index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organizational_unit_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("organizational_units.id"),
        nullable=True
    )

    effect: Mapped[PermissionEffect] = mapped_column(SQLEnum(PermissionEffect), nullable=False)
    override_reason: Mapped[str] = mapped_column(Text, nullable=False)
    business_justification: Mapped[str] = mapped_column(Text, nullable=False)

    # Approval workflow
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approval_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    effective_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    effective_until: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Periodic review
    requires_review: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_review_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True, index=True)
    last_review_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    @property
    def is_pending_approval(self) -> bool:
        """Overrides granting an approval-gated permission stay inert until approved."""
        return (
            self.effect == PermissionEffect.ALLOW
            and self.permission is not None
            and self.permission.requires_approval
            and self.approved_by is None
        )

    def __repr__(self) -> str:
        return f"<PermissionOverride(id={self.id}, user_id={self.user_id}, permission_id={self.permission_id}, effect={self.effect})>"


# ============================================================================
# Cache and Audit
# ============================================================================

class PermissionCacheEntry(Base):
    """
    Persisted (L2) tier of the effective-permission cache.

    Ephemeral: every row of a tenant is deleted on any access-control
    mutation in that tenant.
    """
    __tablename__ = "permission_cache"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    permission_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organizational_context: Mapped[str] = mapped_column(String(255), nullable=False)

    effective_permissions: Mapped[list[Dict[str, Any]]] = mapped_column(JSON, nullable=False)

    computed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    computation_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cache_hits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<PermissionCacheEntry(hash={self.permission_hash[:12]}, tenant_id={self.tenant_id}, hits={self.cache_hits})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking access-control mutations.

    Tracks who did what, when, and in which tenant.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Context
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
