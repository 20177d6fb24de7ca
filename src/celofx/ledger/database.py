"""Ledger database engine and sessions.

The ledger holds trades, vault deposits and FX orders. Every state change
goes through ``get_db``: one session per unit of work, committed when the
block exits cleanly and rolled back otherwise. Services accept an explicit
session factory so tests and the app can point them at their own engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from celofx.config import get_settings
from celofx.ledger.models import Base

# Seconds a SQLite writer waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT = 15

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    """Map a plain ``sqlite:///`` URL onto the aiosqlite driver."""
    if url.startswith("sqlite:///") and "aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def create_ledger_engine(url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if url.startswith("sqlite") else {}
    return create_async_engine(
        async_database_url(url), echo=echo, connect_args=connect_args, future=True
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after commit; trade and deposit dicts are built from them.
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide ledger engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_ledger_engine(
            settings.database_url, echo=settings.debug and not settings.is_production
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def get_db(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One ledger unit of work.

    Commits on success, rolls back on any exception.
    """
    session_factory = session_factory or get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create the trade, deposit and order tables if missing."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
