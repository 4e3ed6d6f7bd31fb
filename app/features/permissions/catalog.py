"""
Global permission catalog.

The catalog is static-ish: definitions below are synced into the
``permissions`` table at seed time and treated as read-only during
resolution.
"""
from typing import Iterable, NamedTuple, Optional, Sequence

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.exceptions import NotFoundError
from app.features.permissions.models import Permission, RiskLevel, ScopeLevel
from app.utils import get_logger


log = get_logger(__name__)


class PermissionDefinition(NamedTuple):
    code: str
    name: str
    module: str
    resource_type: str
    action: str
    scope_level: ScopeLevel
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    requires_approval: bool = False
    requires_mfa: bool = False


S = ScopeLevel
R = RiskLevel

DEFAULT_PERMISSIONS: list[PermissionDefinition] = [
    # Sales & CRM
    PermissionDefinition("lead.view_own", "View Own Leads", "sales", "lead", "view", S.OWN, "View own assigned leads"),
    PermissionDefinition("lead.view_team", "View Team Leads", "sales", "lead", "view", S.TEAM, "View team leads"),
    PermissionDefinition("lead.view_location", "View Location Leads", "sales", "lead", "view", S.LOCATION, "View all location leads"),
    PermissionDefinition("lead.view_regional", "View Regional Leads", "sales", "lead", "view", S.REGIONAL, "View regional leads"),
    PermissionDefinition("lead.view_company", "View Company Leads", "sales", "lead", "view", S.COMPANY, "View all company leads"),
    PermissionDefinition("lead.create", "Create Leads", "sales", "lead", "create", S.OWN, "Create new leads"),
    PermissionDefinition("lead.edit_own", "Edit Own Leads", "sales", "lead", "edit", S.OWN, "Edit own assigned leads"),
    PermissionDefinition("lead.edit_team", "Edit Team Leads", "sales", "lead", "edit", S.TEAM, "Edit team leads"),
    PermissionDefinition("lead.assign", "Assign Leads", "sales", "lead", "assign", S.TEAM, "Assign leads to team members", requires_approval=True),

    # Quotes & proposals
    PermissionDefinition("quote.create", "Create Quotes", "sales", "quote", "create", S.OWN, "Create new quotes"),
    PermissionDefinition("quote.approve_standard", "Approve Standard Quotes", "sales", "quote", "approve", S.TEAM, "Approve standard quotes", R.MEDIUM),
    PermissionDefinition("quote.approve_high_value", "Approve High Value Quotes", "sales", "quote", "approve", S.LOCATION, "Approve high value quotes", R.HIGH, requires_approval=True),
    PermissionDefinition("quote.approve_enterprise", "Approve Enterprise Quotes", "sales", "quote", "approve", S.COMPANY, "Approve enterprise quotes", R.CRITICAL, requires_mfa=True),

    # Service management
    PermissionDefinition("ticket.view_own", "View Own Tickets", "service", "ticket", "view", S.OWN, "View own assigned service tickets"),
    PermissionDefinition("ticket.view_team", "View Team Tickets", "service", "ticket", "view", S.TEAM, "View team service tickets"),
    PermissionDefinition("ticket.view_location", "View Location Tickets", "service", "ticket", "view", S.LOCATION, "View location service tickets"),
    PermissionDefinition("ticket.create", "Create Service Tickets", "service", "ticket", "create", S.OWN, "Create service tickets"),
    PermissionDefinition("ticket.assign", "Assign Service Tickets", "service", "ticket", "assign", S.TEAM, "Assign service tickets"),

    # Equipment
    PermissionDefinition("equipment.install", "Install Equipment", "service", "equipment", "install", S.OWN, "Install and configure equipment"),
    PermissionDefinition("equipment.configure", "Configure Equipment", "service", "equipment", "configure", S.TEAM, "Configure equipment settings"),
    PermissionDefinition("equipment.remote_access", "Remote Equipment Access", "service", "equipment", "remote_access", S.LOCATION, "Remote access to equipment", R.HIGH),

    # Finance
    PermissionDefinition("commission.view_own", "View Own Commission", "finance", "commission", "view", S.OWN, "View own commission data"),
    PermissionDefinition("commission.view_team", "View Team Commission", "finance", "commission", "view", S.TEAM, "View team commission data"),
    PermissionDefinition("financial.view_location", "View Location Financials", "finance", "report", "view", S.LOCATION, "View location financial reports", R.MEDIUM),
    PermissionDefinition("financial.view_regional", "View Regional Financials", "finance", "report", "view", S.REGIONAL, "View regional financial reports", R.HIGH),
    PermissionDefinition("financial.view_company", "View Company Financials", "finance", "report", "view", S.COMPANY, "View company financial reports", R.CRITICAL, requires_mfa=True),

    # User and role management
    PermissionDefinition("user.create_location", "Create Location Users", "admin", "user", "create", S.LOCATION, "Create location-level users", requires_approval=True),
    PermissionDefinition("user.create_regional", "Create Regional Users", "admin", "user", "create", S.REGIONAL, "Create regional-level users", requires_approval=True),
    PermissionDefinition("user.create_company", "Create Company Users", "admin", "user", "create", S.COMPANY, "Create company-level users", R.HIGH, requires_mfa=True),
    PermissionDefinition("role.manage_permissions", "Manage Role Permissions", "admin", "role", "manage", S.COMPANY, "Manage role permissions", R.CRITICAL, requires_mfa=True),

    # Territory
    PermissionDefinition("territory.manage_assignments", "Manage Territory Assignments", "sales", "territory", "manage", S.REGIONAL, "Manage territory assignments", R.MEDIUM),
    PermissionDefinition("territory.view_performance", "View Territory Performance", "sales", "territory", "view", S.REGIONAL, "View territory performance metrics"),

    # Audit & compliance
    PermissionDefinition("audit.view_location", "View Location Audit Logs", "admin", "audit", "view", S.LOCATION, "View location audit logs", R.MEDIUM),
    PermissionDefinition("audit.view_regional", "View Regional Audit Logs", "admin", "audit", "view", S.REGIONAL, "View regional audit logs", R.HIGH),
    PermissionDefinition("audit.view_company", "View Company Audit Logs", "admin", "audit", "view", S.COMPANY, "View company audit logs", R.CRITICAL),
    PermissionDefinition("compliance.manage", "Manage Compliance", "admin", "compliance", "manage", S.PLATFORM, "Manage compliance settings", R.CRITICAL, requires_mfa=True),

    # Platform administration
    PermissionDefinition("platform.access_all_tenants", "Access All Tenants", "platform", "tenant", "access", S.PLATFORM, "Access all tenant data", R.CRITICAL, requires_mfa=True),
    PermissionDefinition("platform.view_system_metrics", "View System Metrics", "platform", "metrics", "view", S.PLATFORM, "View system performance metrics", R.MEDIUM),
]


async def sync_catalog(
    db: AsyncSession,
    definitions: Iterable[PermissionDefinition] = DEFAULT_PERMISSIONS
) -> int:
    """
    Insert catalog definitions that are missing from the database.

    Existing rows are left untouched, so running this repeatedly is safe.

    Returns:
        Number of permissions created
    """
    definitions = list(definitions)
    result = await db.execute(select(Permission.code))
    existing = set(result.scalars().all())

    created = 0
    for definition in definitions:
        if definition.code in existing:
            continue
        db.add(Permission(**definition._asdict()))
        existing.add(definition.code)
        created += 1

    await db.flush()
    log.info(f"Permission catalog synced: {created} created, {len(definitions) - created} already present")
    return created


async def get_permission_by_code(db: AsyncSession, code: str) -> Permission:
    """
    Raises:
        NotFoundError: if no catalog entry has this code
    """
    result = await db.execute(select(Permission).where(Permission.code == code))
    permission = result.scalar_one_or_none()
    if permission is None:
        raise NotFoundError("permission", code)
    return permission


async def get_permissions_by_codes(db: AsyncSession, codes: Sequence[str]) -> list[Permission]:
    """Look up several codes at once, preserving input order; any unknown code raises NotFoundError."""
    if not codes:
        return []
    result = await db.execute(select(Permission).where(Permission.code.in_(set(codes))))
    by_code = {p.code: p for p in result.scalars().all()}
    missing = [code for code in codes if code not in by_code]
    if missing:
        raise NotFoundError("permission", ", ".join(missing))
    return [by_code[code] for code in codes]


async def permission_exists(db: AsyncSession, code: str) -> bool:
    result = await db.execute(select(Permission.id).where(Permission.code == code))
    return result.first() is not None


async def list_permissions(
    db: AsyncSession,
    module: Optional[str] = None,
    resource_type: Optional[str] = None,
    scope_level: Optional[ScopeLevel] = None,
    search: Optional[str] = None,
) -> list[Permission]:
    """List catalog entries with optional filtering, ordered by module/resource/action."""
    stmt = select(Permission)

    if module:
        stmt = stmt.where(Permission.module == module)
    if resource_type:
        stmt = stmt.where(Permission.resource_type == resource_type)
    if scope_level:
        stmt = stmt.where(Permission.scope_level == scope_level)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(
                Permission.name.ilike(pattern),
                Permission.code.ilike(pattern),
                Permission.description.ilike(pattern),
            )
        )

    stmt = stmt.order_by(Permission.module, Permission.resource_type, Permission.action, Permission.code)
    result = await db.execute(stmt)
    return list(result.scalars().all())
