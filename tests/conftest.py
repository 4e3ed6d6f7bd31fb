"""Shared pytest fixtures for access-control tests."""

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database.engine import init_db
from app.features.permissions.cache import MemoryPermissionCache, TieredPermissionCache
from app.features.permissions.catalog import sync_catalog
from app.features.permissions.entries import OrgContext
from app.features.permissions.hierarchy import HierarchyStore
from app.features.permissions.models import OrganizationalUnit, Role
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.service import AccessControlService, Actor
from tests.utils import ADMIN_ID, TENANT


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite database per test."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rbac.sqlite'}", poolclass=NullPool)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture()
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def catalog(db: AsyncSession) -> None:
    await sync_catalog(db)
    await db.commit()


@pytest.fixture()
def cache() -> TieredPermissionCache:
    return TieredPermissionCache(MemoryPermissionCache())


@pytest.fixture()
def units() -> HierarchyStore[OrganizationalUnit]:
    return HierarchyStore(OrganizationalUnit, "organizational unit")


@pytest.fixture()
def roles() -> HierarchyStore[Role]:
    return HierarchyStore(Role, "role")


@pytest.fixture()
def service(cache, units, roles) -> AccessControlService:
    return AccessControlService(cache, units, roles)


@pytest.fixture()
def resolver(cache, roles) -> PermissionResolver:
    return PermissionResolver(cache, roles)


@pytest.fixture()
def actor() -> Actor:
    return Actor(user_id=ADMIN_ID, ip_address="127.0.0.1", user_agent="pytest")


@pytest.fixture()
def context() -> OrgContext:
    return OrgContext(tenant_id=TENANT)
