"""
Centralized Test Configuration.
"""

import itertools

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from tripmerge.app.main import app
from tripmerge.app.db.session import get_db, Base
from tripmerge.app.domain.merging.scheduler import AutoMergeScheduler
from tripmerge.app.models.booking import Booking
from tripmerge.app.models.vehicle import Vehicle
from tripmerge.app.services.cache import TTLCache

from factories import FakeOptimizer, booking_fields

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def make_booking():
    """Transient (unsaved) booking for pure evaluation tests."""
    counter = {"next_id": 1}

    def _make(**overrides):
        fields = booking_fields(**overrides)
        fields.setdefault("id", counter["next_id"])
        counter["next_id"] = max(counter["next_id"], fields["id"]) + 1
        return Booking(**fields)

    return _make


@pytest.fixture
def create_booking(db_session):
    """Persisted booking; keyword arguments override the defaults."""
    async def _create(**overrides):
        booking = Booking(**booking_fields(**overrides))
        db_session.add(booking)
        await db_session.commit()
        return booking

    return _create


@pytest.fixture
def create_vehicle(db_session):
    registrations = itertools.count(1000)

    async def _create(**overrides):
        fields = dict(registration=f"DXB-{next(registrations)}", vehicle_type="Sedan", capacity=4)
        fields.update(overrides)
        vehicle = Vehicle(**fields)
        db_session.add(vehicle)
        await db_session.commit()
        return vehicle

    return _create


@pytest.fixture
def optimizer():
    return FakeOptimizer()


@pytest.fixture
def failing_optimizer():
    return FakeOptimizer(status="ERROR")


@pytest.fixture
def configured_app(optimizer):
    """App wired to the test database and a fake optimizer."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.optimizer = optimizer
    app.state.config_cache = TTLCache(ttl_seconds=0)
    app.state.scheduler = AutoMergeScheduler(TestingSessionLocal, optimizer, cache=app.state.config_cache)
    yield app

    app.dependency_overrides = {}
    for name in ("optimizer", "config_cache", "scheduler"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture
async def client(configured_app):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=configured_app), base_url="http://test") as ac:
        yield ac
