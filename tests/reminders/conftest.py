"""
Shared test fixtures and configuration for pytest.
"""
import os

# Settings are read at import time; configure before importing the app.
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["STORE_BACKEND"] = "memory"
os.environ["LOCK_BACKEND"] = "database"
os.environ["WHATSAPP_PROVIDER"] = "mock"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./prima_unused.db"

import asyncio
import itertools
from datetime import timedelta
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.api.dependencies import (
    get_lock_service,
    get_rate_limit_service,
    get_session_factory,
    get_transport,
)
from app.config.config import settings
from app.core.cache import InMemoryStore
from app.core.utils import utcnow
from app.db.base import Base
from app.main import app
from app.models.patient_model import Patient, VerificationStatus
from app.models.reminder_model import Reminder, ReminderStatus, ReminderType
from app.schemas.reminder_schemas import SendResult
from app.services.dispatch_service import DispatchService
from app.services.followup_service import FollowupService
from app.services.lock_service import DatabaseLockStore, DistributedLockService
from app.services.rate_limit_service import RateLimitService


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every send; answers with ``result`` after ``delay`` seconds."""

    def __init__(self, result: Optional[SendResult] = None, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.sent = []
        self._ids = itertools.count(1)

    async def send(self, phone_number: str, message: str) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((phone_number, message))
        if self.result is not None:
            return self.result
        return SendResult(success=True, message_id=f"wamid_{next(self._ids)}")


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database, fresh for each test."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}",
        poolclass=NullPool,
        echo=False,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_patient(session_factory):
    """Factory for persisted patients; eligible by default."""

    async def _make_patient(**overrides) -> Patient:
        values = {
            "name": "Siti Aminah",
            "phone_number": "081234567890",
            "is_active": True,
            "verification_status": VerificationStatus.VERIFIED.value,
        }
        values.update(overrides)
        patient = Patient(**values)
        async with session_factory() as session:
            session.add(patient)
            await session.commit()
        return patient

    return _make_patient


@pytest.fixture
def make_reminder(session_factory):
    """Factory for persisted reminders; due since midnight by default."""

    async def _make_reminder(patient: Patient, **overrides) -> Reminder:
        values = {
            "patient_id": patient.id,
            "start_date": utcnow() - timedelta(days=1),
            "scheduled_time": "00:00",
            "is_active": True,
            "reminder_type": ReminderType.MEDICATION.value,
            "message": "Waktunya minum obat.",
            "status": ReminderStatus.PENDING.value,
        }
        values.update(overrides)
        reminder = Reminder(**values)
        async with session_factory() as session:
            session.add(reminder)
            await session.commit()
        return reminder

    return _make_reminder


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": f"Bearer {settings.CRON_SECRET}"}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def lock_service(session_factory) -> DistributedLockService:
    return DistributedLockService(DatabaseLockStore(session_factory))


@pytest.fixture
def rate_limiter() -> RateLimitService:
    return RateLimitService(InMemoryStore())


@pytest.fixture
def followup_service(session_factory) -> FollowupService:
    return FollowupService(session_factory=session_factory)


@pytest.fixture
def dispatcher(lock_service, transport, session_factory, followup_service) -> DispatchService:
    return DispatchService(
        lock_service=lock_service,
        transport=transport,
        session_factory=session_factory,
        followup_service=followup_service,
        lock_retry_delay=0.01,
    )


@pytest.fixture
async def client(
    session_factory, lock_service, rate_limiter, transport
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the database, stores and transport swapped for test doubles."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_lock_service] = lambda: lock_service
    app.dependency_overrides[get_rate_limit_service] = lambda: rate_limiter
    app.dependency_overrides[get_transport] = lambda: transport

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def fetch_reminder(session_factory):
    """Read a reminder back in a fresh session."""

    async def _fetch(reminder_id) -> Reminder:
        async with session_factory() as session:
            return await session.get(Reminder, reminder_id)

    return _fetch
