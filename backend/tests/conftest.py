"""
Test Configuration — Fixtures for async DB, record store, test client, and seed data.

Each test gets its own in-memory SQLite database (StaticPool keeps the one
connection alive for the engine's lifetime), so application commits are real
commits and nothing leaks between tests.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_current_user, get_db, get_sink
from api.main import app
from core.errors import StoreFailure
from db.session import Base
from notifications import CollectingSink
from store.record_store import RecordStore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

NOW = datetime(2026, 3, 10, 12, 0, 0)
AUDITOR_ID = "auditor-1"
DEVICE_SECRET = "device-secret-key"


@pytest.fixture
async def test_engine():
    """Fresh database per test with all tables built."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def store(test_db):
    return RecordStore(test_db)


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": AUDITOR_ID,
        "email": "auditor@printrun.app",
        "role": "AUDITOR",
    }


@pytest.fixture
async def client(test_db, mock_user, sink):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    def override_get_sink():
        return sink

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_sink] = override_get_sink

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


class FailingStore(RecordStore):
    """RecordStore whose ``atomic`` blocks fail for the named operations."""

    def __init__(self, session, fail_on: set[str]):
        super().__init__(session)
        self.fail_on = set(fail_on)
        self.attempted: list[str] = []

    @asynccontextmanager
    async def atomic(self, operation):
        self.attempted.append(operation)
        if operation in self.fail_on:
            await self.rollback()
            raise StoreFailure(operation, RuntimeError("injected failure"))
        async with super().atomic(operation) as inner:
            yield inner


@pytest.fixture
def failing_store(test_db):
    def _build(*operations: str) -> FailingStore:
        return FailingStore(test_db, set(operations))

    return _build


# ─── Seed data ──────────────────────────────────────────────────────────────


def make_order(status="SUBMITTED", submitted_hours_ago: float = 1, **overrides):
    from db.models import Order
    from workflow.states import OrderStatus

    fields = {
        "id": uuid.uuid4(),
        "school_id": uuid.uuid4(),
        "school_name": "Hillside Primary",
        "external_ref": f"PR-{uuid.uuid4().hex[:8].upper()}",
        "status": OrderStatus(status),
        "total_students": 3,
        "total_classes": 2,
        "total_garments": 9,
        "total_dark_garments": 5,
        "total_light_garments": 4,
        "submitted_total_students": 3,
        "submitted_total_classes": 2,
        "submitted_total_garments": 9,
        "submitted_total_dark_garments": 5,
        "submitted_total_light_garments": 4,
        "submission_time": NOW - timedelta(hours=submitted_hours_ago) if status != "UNSUBMITTED" else None,
        "created_at": NOW - timedelta(days=2),
        "updated_at": NOW - timedelta(days=2),
    }
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
async def seeded_order(test_db):
    """
    One submitted order with two classes and three students:

      Class 1A: Ada (2 dark, 1 light), Ben (1 dark, 2 light)
      Class 1B: Cleo (2 dark, 1 light)
    """
    from db.models import SchoolClass, Student

    order = make_order()
    test_db.add(order)
    await test_db.flush()

    class_a = SchoolClass(id=uuid.uuid4(), order_id=order.id, name="1A", submitted_students_count=2, students_to_serve=2)
    class_b = SchoolClass(id=uuid.uuid4(), order_id=order.id, name="1B", submitted_students_count=1, students_to_serve=1)
    test_db.add_all([class_a, class_b])
    await test_db.flush()

    def _student(name, school_class, dark, light):
        return Student(
            id=uuid.uuid4(),
            order_id=order.id,
            class_id=school_class.id,
            full_name=name,
            submitted_dark_garments=dark,
            submitted_light_garments=light,
            dark_garments=dark,
            light_garments=light,
        )

    ada = _student("Ada", class_a, 2, 1)
    ben = _student("Ben", class_a, 1, 2)
    cleo = _student("Cleo", class_b, 2, 1)
    test_db.add_all([ada, ben, cleo])
    await test_db.commit()

    return {
        "order_id": order.id,
        "class_a_id": class_a.id,
        "class_b_id": class_b.id,
        "ada_id": ada.id,
        "ben_id": ben.id,
        "cleo_id": cleo.id,
    }


@pytest.fixture
async def seeded_machine(test_db):
    from db.models import Machine

    machine = Machine(
        id=uuid.uuid4(),
        device_id="PRN-001",
        secret_key=DEVICE_SECRET,
        is_online=False,
        is_printing=False,
        last_seen_at=NOW - timedelta(hours=1),
        firmware_version="1.0.0",
        model="DTG-500",
    )
    test_db.add(machine)
    await test_db.commit()
    return {"machine_id": machine.id, "device_id": machine.device_id}
