"""Database engine, session factory, and declarative base.

The async engine is built from ``settings.database_url``.  PostgreSQL
(asyncpg) gets a sized connection pool; SQLite (aiosqlite, used by the
test-suite and local tinkering) gets none of the pool arguments it would
reject.

FastAPI dependency:
  - get_db()  → one session per request, committed on success and rolled
                back on any exception
"""

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from agritrace.config import settings


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine with backend-appropriate pool settings."""
    kwargs: dict[str, Any] = {"echo": echo}
    backend = make_url(url).get_backend_name()
    if backend.startswith("postgresql"):
        kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    elif backend.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_async_engine(url, **kwargs)


engine = build_engine(settings.database_url, echo=settings.debug)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Declarative base for every traceability table."""
    pass


# ── Session dependency ──────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a session wrapped in a single unit of work."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_all() -> None:
    """Create missing tables (development / CLI ``init-db``)."""
    from agritrace import models  # noqa: F401 register mappers

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
