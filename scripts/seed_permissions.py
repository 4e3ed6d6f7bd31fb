"""
Seed script to populate the permission catalog and initialize tenants.

Run this script after database initialization to create:
- The default permission catalog (idempotent)
- Optionally, for one tenant: the headquarters unit, a role template and
  its role-permission bindings

Usage:
    uv run python -m scripts.seed_permissions
    uv run python -m scripts.seed_permissions --tenant acme --dealer-type small
"""
import argparse
import asyncio

from app.core.database.engine import get_db, init_db, AsyncSessionLocal
from app.features.permissions.cache import (
    DatabasePermissionCache,
    MemoryPermissionCache,
    TieredPermissionCache,
)
from app.features.permissions.catalog import DEFAULT_PERMISSIONS, sync_catalog
from app.features.permissions.hierarchy import HierarchyStore
from app.features.permissions.models import OrganizationalUnit, Role
from app.features.permissions.seed import TEMPLATES, DealerType
from app.features.permissions.service import AccessControlService, Actor
from app.utils import get_logger


log = get_logger(__name__)

SYSTEM_ACTOR = "system"


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the permission catalog and optionally a tenant")
    parser.add_argument("--tenant", help="Tenant to initialize with the headquarters unit and role template")
    parser.add_argument(
        "--dealer-type",
        choices=[dealer_type.value for dealer_type in DealerType],
        default=DealerType.STANDARD.value,
    )
    parser.add_argument("--created-by", default=SYSTEM_ACTOR, help="Recorded as creator in the audit trail")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main function to seed the catalog and, if requested, a tenant."""
    args = parse_args(argv)
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        created = await sync_catalog(db, DEFAULT_PERMISSIONS)
        await db.commit()
        log.info(f"Permission catalog: {created} created, {len(DEFAULT_PERMISSIONS) - created} already present")

        if args.tenant:
            dealer_type = DealerType(args.dealer_type)
            service = AccessControlService(
                TieredPermissionCache(MemoryPermissionCache(), DatabasePermissionCache(AsyncSessionLocal)),
                HierarchyStore(OrganizationalUnit, "organizational unit"),
                HierarchyStore(Role, "role"),
            )
            summary = await service.seed_tenant(db, Actor(user_id=args.created_by), args.tenant, dealer_type)

            log.info(f"Tenant {args.tenant} initialized: {summary}")
            log.info("")
            log.info("Roles created:")
            for template in TEMPLATES[dealer_type]:
                log.info(f"  - {template.code}: {template.name} (level {template.hierarchy_level})")

        break  # Only use first session

    log.info("Permission seeding completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())
