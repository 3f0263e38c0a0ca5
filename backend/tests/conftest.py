"""Pytest configuration and fixtures for AgriTrace tests.

Each test gets a fresh in-memory SQLite database (aiosqlite) and Redis
caching is switched off, so the suite needs no external services.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ["DEBUG"] = "false"

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agritrace import models  # noqa: F401 register mappers
from agritrace.database import Base, get_db
from agritrace.main import app
from agritrace.models.stage_record import Stage, StageRecord, utcnow
from agritrace.schemas.stage import StageRecordCreate
from agritrace.services import stage_store


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """In-memory database shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for calling the services directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with one committed-or-rolled-back session per request."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest.fixture
def stage_factory(db_session: AsyncSession):
    """Create a stage record through the store (all rules enforced).

    ``hours_ago`` / ``duration_hours`` place the record in the past so
    completed records get a real duration.
    """

    async def _create(
        batch_id: str = "BATCH-1",
        stage: Stage = Stage.HARVEST,
        quantity_in="100",
        quantity_out=None,
        loss_quantity="0",
        hours_ago: float = 48,
        duration_hours: float | None = None,
        **fields,
    ) -> StageRecord:
        start = utcnow() - timedelta(hours=hours_ago)
        end = start + timedelta(hours=duration_hours) if duration_hours is not None else None
        body = StageRecordCreate(
            batch_id=batch_id,
            stage=stage,
            location=fields.pop("location", "Farm Field 7"),
            responsible_party=fields.pop("responsible_party", "Jane Grower"),
            quantity_in=Decimal(str(quantity_in)),
            quantity_out=Decimal(str(quantity_out)) if quantity_out is not None else None,
            loss_quantity=Decimal(str(loss_quantity)),
            stage_start_date=start,
            stage_end_date=end,
            **fields,
        )
        return await stage_store.create_stage(db_session, body)

    return _create


@pytest_asyncio.fixture
async def three_stage_batch(stage_factory):
    """HARVEST(100→95, loss 5) → STORAGE(95→90, loss 5) → TRANSPORT(90, open)."""
    harvest = await stage_factory(
        stage=Stage.HARVEST, quantity_in=100, quantity_out=95, loss_quantity=5,
        hours_ago=72, duration_hours=10, cost="120.00",
    )
    storage = await stage_factory(
        stage=Stage.STORAGE, quantity_in=95, quantity_out=90, loss_quantity=5,
        hours_ago=60, duration_hours=30, cost="80.00",
    )
    transport = await stage_factory(
        stage=Stage.TRANSPORT, quantity_in=90, hours_ago=20,
    )
    return harvest, storage, transport


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
    config.addinivalue_line("markers", "cache: Cache tests")
    config.addinivalue_line("markers", "integration: Integration tests")
