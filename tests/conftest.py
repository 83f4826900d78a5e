"""
Global pytest fixtures for the Gymflow billing test suite.

Provides:
- Async SQLite database session (file-backed, one per test)
- FastAPI app and async client sharing the test session
- Profile and plan factories
"""
import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_gymflow"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_gymflow_secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_test_webhook_secret"
os.environ["RAZORPAY_API_BASE_URL"] = "https://api.razorpay.test/v1"


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Rebuild cached settings so per-test env changes are honoured."""
    from app.shared.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path, request):
    """
    Create async SQLite engine for testing using a temporary file.

    Tests marked `foreign_keys` get SQLite foreign key enforcement, matching
    the constraints Postgres applies in production.
    """
    from sqlalchemy import event
    from sqlalchemy.ext.asyncio import create_async_engine

    db_url = f"sqlite+aiosqlite:///{tmp_path / f'test_{uuid4().hex}.sqlite'}"
    engine = create_async_engine(db_url, echo=False)

    if request.node.get_closest_marker("foreign_keys"):

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    import app.models  # noqa: F401
    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    return db_session


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    """Use the real Gymflow app for integration tests."""
    from app.main import app as gymflow_app

    return gymflow_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient

    from app.shared.db.session import get_db

    async def _override_get_db():
        yield db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    if old_override is not None:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)


# ============================================================================
# Data Factories
# ============================================================================


@pytest_asyncio.fixture
async def profile_factory(db):
    from app.models.user import UserProfile

    async def _create(email: str = "owner@gym.example", **overrides):
        profile = UserProfile(id=overrides.pop("id", uuid4()), email=email, **overrides)
        db.add(profile)
        await db.commit()
        return profile

    return _create


@pytest_asyncio.fixture
async def plan_factory(db):
    from app.models.subscription import SubscriptionPlan

    async def _create(name: str = "Pro", **overrides):
        values = {
            "price_monthly": 49900,
            "price_annual": 499000,
            "billing_cycle": "monthly",
            "currency": "INR",
            **overrides,
        }
        plan = SubscriptionPlan(id=uuid4(), name=name, **values)
        db.add(plan)
        await db.commit()
        return plan

    return _create


@pytest_asyncio.fixture
async def owner(profile_factory):
    return await profile_factory()
