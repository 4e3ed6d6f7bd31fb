"""
Tenant bootstrap: headquarters unit, permission catalog and role templates.

Templates place more senior roles below the role they extend, so a role
inherits every grant of its ancestors. Two templates exist: the standard
eight-level dealer hierarchy and a flatter one for small dealers.
"""
import enum
from typing import NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.bindings import grant_permissions
from app.features.permissions.catalog import sync_catalog
from app.features.permissions.exceptions import InvalidOperationError
from app.features.permissions.hierarchy import TreeEditor
from app.features.permissions.models import OrganizationalTier, OrganizationalUnit, Role
from app.utils import get_logger


log = get_logger(__name__)


class DealerType(str, enum.Enum):
    STANDARD = "standard"
    SMALL = "small"


class RoleTemplate(NamedTuple):
    code: str
    name: str
    description: str
    hierarchy_level: int
    tier: OrganizationalTier
    department: str
    permissions: list[str]
    parent: Optional[str] = None
    is_system_role: bool = False
    is_customizable: bool = True


T = OrganizationalTier

# Parents are listed before their children
STANDARD_ROLES: list[RoleTemplate] = [
    # Level 8: platform
    RoleTemplate("PLATFORM_ADMIN", "Platform Admin", "Full system access across all tenants", 8, T.PLATFORM, "platform",
                 ["platform.access_all_tenants", "platform.view_system_metrics", "compliance.manage", "audit.view_company"],
                 is_system_role=True, is_customizable=False),
    RoleTemplate("SUPPORT_ENGINEER", "Support Engineer", "Technical support with limited cross-tenant access", 8, T.PLATFORM, "platform",
                 ["platform.view_system_metrics", "audit.view_company"],
                 is_system_role=True, is_customizable=False),

    # Level 7: company leadership
    RoleTemplate("COMPANY_ADMIN", "Company Admin", "Full company access, can customize all lower roles", 7, T.COMPANY, "admin",
                 ["role.manage_permissions", "user.create_company", "financial.view_company", "lead.view_company",
                  "audit.view_company", "territory.manage_assignments"],
                 is_customizable=False),
    RoleTemplate("CEO", "CEO", "Chief Executive Officer with strategic oversight", 7, T.COMPANY, "executive",
                 ["financial.view_company", "lead.view_company", "quote.approve_enterprise", "territory.view_performance"]),
    RoleTemplate("CFO", "CFO", "Chief Financial Officer", 7, T.COMPANY, "finance",
                 ["financial.view_company", "commission.view_team", "quote.approve_enterprise"]),

    # Sales line, junior to senior
    RoleTemplate("SALES_REP", "Sales Representative", "Individual sales activities", 1, T.LOCATION, "sales",
                 ["lead.view_own", "lead.create", "lead.edit_own", "quote.create", "commission.view_own"]),
    RoleTemplate("SENIOR_SALES_REP", "Senior Sales Rep", "Lead sales representative", 2, T.LOCATION, "sales",
                 ["lead.view_team", "lead.create", "quote.create", "commission.view_own"], parent="SALES_REP"),
    RoleTemplate("SALES_SUPERVISOR", "Sales Supervisor", "Team lead for sales representatives", 3, T.LOCATION, "sales",
                 ["lead.view_team", "lead.edit_team", "quote.approve_standard", "commission.view_team"], parent="SENIOR_SALES_REP"),
    RoleTemplate("SALES_MANAGER", "Sales Manager", "Location sales team management", 4, T.LOCATION, "sales",
                 ["lead.view_location", "quote.approve_standard", "lead.assign", "commission.view_team"], parent="SALES_SUPERVISOR"),
    RoleTemplate("REGIONAL_SALES_DIRECTOR", "Regional Sales Director", "Multi-location sales management", 5, T.REGIONAL, "sales",
                 ["lead.view_regional", "quote.approve_high_value", "territory.manage_assignments", "commission.view_team"],
                 parent="SALES_MANAGER"),
    RoleTemplate("VP_SALES", "VP Sales", "Vice President of Sales", 6, T.COMPANY, "sales",
                 ["lead.view_company", "quote.approve_high_value", "territory.manage_assignments", "commission.view_team",
                  "user.create_regional"],
                 parent="REGIONAL_SALES_DIRECTOR"),

    # Service line, junior to senior
    RoleTemplate("FIELD_TECHNICIAN", "Field Technician", "Individual service activities", 1, T.LOCATION, "service",
                 ["ticket.view_own", "ticket.create", "equipment.install"]),
    RoleTemplate("SENIOR_TECHNICIAN", "Senior Technician", "Lead field technician", 2, T.LOCATION, "service",
                 ["ticket.view_team", "equipment.install", "equipment.configure"], parent="FIELD_TECHNICIAN"),
    RoleTemplate("SERVICE_SUPERVISOR", "Service Supervisor", "Team lead for technicians", 3, T.LOCATION, "service",
                 ["ticket.view_team", "ticket.assign", "equipment.configure"], parent="SENIOR_TECHNICIAN"),
    RoleTemplate("SERVICE_MANAGER", "Service Manager", "Location service team management", 4, T.LOCATION, "service",
                 ["ticket.view_location", "ticket.assign", "equipment.configure"], parent="SERVICE_SUPERVISOR"),
    RoleTemplate("REGIONAL_SERVICE_MANAGER", "Regional Service Manager", "Multi-location service coordination", 5, T.REGIONAL, "service",
                 ["ticket.view_location", "equipment.remote_access", "ticket.assign"], parent="SERVICE_MANAGER"),
    RoleTemplate("VP_SERVICE", "VP Service", "Vice President of Service Operations", 6, T.COMPANY, "service",
                 ["ticket.view_location", "equipment.remote_access", "user.create_regional"], parent="REGIONAL_SERVICE_MANAGER"),

    # Location and operations management
    RoleTemplate("BRANCH_MANAGER", "Branch Manager", "Complete location oversight", 4, T.LOCATION, "admin",
                 ["financial.view_location", "lead.view_location", "ticket.view_location", "user.create_location",
                  "audit.view_location"],
                 parent="SALES_SUPERVISOR"),
    RoleTemplate("OPERATIONS_DIRECTOR", "Operations Director", "Operations oversight across locations", 6, T.COMPANY, "operations",
                 ["financial.view_regional", "audit.view_regional", "user.create_regional"], parent="BRANCH_MANAGER"),

    RoleTemplate("ADMIN_ASSISTANT", "Administrative Assistant", "Support functions", 1, T.LOCATION, "admin",
                 ["ticket.create", "lead.create"]),
]

SMALL_DEALER_ROLES: list[RoleTemplate] = [
    RoleTemplate("SMALL_SALES_REP", "Sales Rep", "Sales with basic service capabilities", 1, T.LOCATION, "sales",
                 ["lead.view_own", "lead.create", "quote.create", "ticket.create", "commission.view_own"]),
    RoleTemplate("SMALL_SALES_MANAGER", "Sales Manager", "Combined sales and operations management", 4, T.LOCATION, "sales",
                 ["lead.view_location", "quote.approve_standard", "lead.assign", "commission.view_team", "ticket.view_team"],
                 parent="SMALL_SALES_REP"),
    RoleTemplate("OWNER_MANAGER", "Owner/Manager", "Small dealer owner with full access", 7, T.COMPANY, "admin",
                 ["role.manage_permissions", "user.create_company", "financial.view_company", "lead.view_company",
                  "ticket.view_location", "quote.approve_high_value"],
                 parent="SMALL_SALES_MANAGER"),
    RoleTemplate("SMALL_TECHNICIAN", "Technician", "Service with basic sales support", 1, T.LOCATION, "service",
                 ["ticket.view_own", "equipment.install", "equipment.configure", "lead.create"]),
    RoleTemplate("SMALL_SERVICE_MANAGER", "Service Manager", "Combined service and technical management", 4, T.LOCATION, "service",
                 ["ticket.view_location", "ticket.assign", "equipment.configure", "equipment.remote_access", "lead.create"],
                 parent="SMALL_TECHNICIAN"),
]

TEMPLATES: dict[DealerType, list[RoleTemplate]] = {
    DealerType.STANDARD: STANDARD_ROLES,
    DealerType.SMALL: SMALL_DEALER_ROLES,
}

HEADQUARTERS_CODE = "HQ"


async def seed_tenant(
    db: AsyncSession,
    units: TreeEditor[OrganizationalUnit],
    roles: TreeEditor[Role],
    created_by: str,
    dealer_type: DealerType = DealerType.STANDARD,
) -> dict:
    """
    Populate an empty tenant. Runs inside the callers' unit and role edits.

    Raises:
        InvalidOperationError: if the tenant already has units or roles
    """
    tenant_id = roles.tree.tenant_id
    if len(units.tree) or len(roles.tree):
        raise InvalidOperationError(f"tenant {tenant_id} is already initialized")

    permissions_created = await sync_catalog(db)

    headquarters = OrganizationalUnit(
        name="Company Headquarters",
        code=HEADQUARTERS_CODE,
        tier=OrganizationalTier.COMPANY,
        is_active=True,
    )
    units.insert(headquarters)
    await db.flush()

    role_ids: dict[str, str] = {}
    bindings_created = 0
    for template in TEMPLATES[dealer_type]:
        role = Role(
            organizational_unit_id=headquarters.id,
            name=template.name,
            code=template.code,
            description=template.description,
            hierarchy_level=template.hierarchy_level,
            tier=template.tier,
            department=template.department,
            is_system_role=template.is_system_role,
            is_customizable=template.is_customizable,
            created_by=created_by,
        )
        roles.insert(role, role_ids[template.parent] if template.parent else None)
        await db.flush()
        role_ids[template.code] = role.id
        bindings_created += len(await grant_permissions(db, role.id, template.permissions))

    log.info(
        f"Seeded tenant {tenant_id} ({dealer_type.value}): {len(role_ids)} roles, "
        f"{bindings_created} bindings, {permissions_created} new catalog entries"
    )
    return {
        "tenant_id": tenant_id,
        "dealer_type": dealer_type.value,
        "organizational_unit_id": headquarters.id,
        "roles_created": len(role_ids),
        "bindings_created": bindings_created,
        "permissions_created": permissions_created,
    }
