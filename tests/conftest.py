"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.

The billing services talk to three systems. In tests:
- the audit database is an in-memory SQLite database (aiosqlite)
- the FHIR server is an InMemoryFhirStore
- Stripe is a mocked StripeGateway
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from practice_billing.core import deps
from practice_billing.dao.organization_billing import OrganizationBillingDAO
from practice_billing.main import create_app
from practice_billing.models.base import Base
from practice_billing.services.audit import AuditService
from practice_billing.services.plan_catalog import default_plan_catalog

from tests.factories import InMemoryFhirStore, make_gateway

# Test database URL
# WHY: SQLite in memory eliminates external database dependencies. StaticPool
# keeps one connection so every session sees the same database.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture
async def db_engine():
    """
    Create a test database engine with the audit table.

    WHY: Function scope gives each test a fresh audit trail.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for asserting on audit rows."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit(session_factory) -> AuditService:
    return AuditService(session_factory)


@pytest.fixture
def fhir_store() -> InMemoryFhirStore:
    return InMemoryFhirStore()


@pytest.fixture
def organizations(fhir_store) -> OrganizationBillingDAO:
    return OrganizationBillingDAO(fhir_store, max_conflict_retries=5)


@pytest.fixture
def catalog():
    return default_plan_catalog()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest_asyncio.fixture
async def client(gateway, organizations, audit) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server. Stripe, FHIR and the audit database are swapped through
    dependency overrides.
    """
    app = create_app()
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_organization_billing_dao] = lambda: organizations
    app.dependency_overrides[deps.get_audit_service] = lambda: audit

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
