"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- ASGI test client with the get_db override
- JWT tokens for tenant users
- Test data factories (tenants, payments, students, claims)
"""
# הגדרת JWT_SECRET_KEY לפני ייבוא app — הולידטור דורש מפתח כש-DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import pytest
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import settings
from app.core.rate_limit import memory_limiter, shared_backoff
from app.db.database import Base, Database, get_db
from app.db.models.online_claim import OnlineSlotClaim
from app.db.models.payment import Payment, PaymentStatus
from app.db.models.student import Student
from app.db.models.tenant import Tenant, TenantDomain
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function

TEST_BILLPLZ_API_KEY = "test-billplz-api-key"
TEST_BILLPLZ_COLLECTION_ID = "col_main"
TEST_BILLPLZ_SIGNATURE_KEY = "test-x-signature-key"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def test_database():
    """Database אמיתי (SQLite) ב-app.state — לבדיקות readiness"""
    database = Database(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    previous = getattr(app.state, "database", None)
    app.state.database = database
    yield database
    app.state.database = previous
    await database.dispose()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """מאפס מוני rate limit בין בדיקות — הם גלובליים לתהליך"""
    memory_limiter.reset()
    shared_backoff.record_success()
    yield
    memory_limiter.reset()


@pytest.fixture
def billplz_env(monkeypatch):
    """מפתחות Billplz ב-env (fallback כשאין מפתחות tenant)"""
    monkeypatch.setattr(settings, "BILLPLZ_API_KEY", TEST_BILLPLZ_API_KEY)
    monkeypatch.setattr(settings, "BILLPLZ_COLLECTION_ID", TEST_BILLPLZ_COLLECTION_ID)
    monkeypatch.setattr(settings, "BILLPLZ_X_SIGNATURE", TEST_BILLPLZ_SIGNATURE_KEY)
    return {
        "api_key": TEST_BILLPLZ_API_KEY,
        "collection_id": TEST_BILLPLZ_COLLECTION_ID,
        "signature_key": TEST_BILLPLZ_SIGNATURE_KEY,
    }


# ============================================================================
# Auth helpers
# ============================================================================


def auth_headers(user_id: str, tenant_id: str, role: str = "parent") -> dict[str, str]:
    """Authorization header עם JWT של משתמש tenant"""
    token = create_access_token(user_id, tenant_id, role)
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def tenant_factory(db_session: AsyncSession):
    """Factory for creating test tenants"""
    async def _create_tenant(
        slug: str = "alpha-school",
        name: str = "Alpha School",
        plan_code: str = "enterprise",
        domain: str | None = None,
    ) -> Tenant:
        tenant = Tenant(slug=slug, name=name, plan_code=plan_code)
        db_session.add(tenant)
        await db_session.flush()
        if domain:
            db_session.add(TenantDomain(tenant_id=tenant.id, domain=domain))
        await db_session.commit()
        await db_session.refresh(tenant)
        return tenant

    return _create_tenant


@pytest.fixture
def payment_factory(db_session: AsyncSession):
    """Factory for creating test payments"""
    async def _create_payment(
        tenant_id: str | None,
        parent_id: str = "parent-1",
        billplz_id: str = "bill_abc123",
        status: PaymentStatus = PaymentStatus.INITIATED,
        total_amount_cents: int = 10000,
        merchant_fee_cents: int = 150,
        **kwargs,
    ) -> Payment:
        payment = Payment(
            tenant_id=tenant_id,
            parent_id=parent_id,
            billplz_id=billplz_id,
            status=status,
            total_amount_cents=total_amount_cents,
            merchant_fee_cents=merchant_fee_cents,
            **kwargs,
        )
        db_session.add(payment)
        await db_session.commit()
        await db_session.refresh(payment)
        return payment

    return _create_payment


@pytest.fixture
def student_factory(db_session: AsyncSession):
    """Factory for creating test students"""
    async def _create_student(tenant_id: str, name: str = "Aisyah", parent_id: str | None = None) -> Student:
        student = Student(tenant_id=tenant_id, name=name, parent_id=parent_id, record_type="student")
        db_session.add(student)
        await db_session.commit()
        await db_session.refresh(student)
        return student

    return _create_student


@pytest.fixture
def claim_factory(db_session: AsyncSession):
    """Factory for creating online slot claims"""
    async def _create_claim(tenant_id: str, parent_id: str, status: str = "pending_payment") -> OnlineSlotClaim:
        claim = OnlineSlotClaim(tenant_id=tenant_id, parent_id=parent_id, status=status)
        db_session.add(claim)
        await db_session.commit()
        await db_session.refresh(claim)
        return claim

    return _create_claim
