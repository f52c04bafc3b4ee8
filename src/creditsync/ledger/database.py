"""Engine and session management for the ledger store.

Every component opens short transactions through `get_db()`. Tests and
scripts pass their own session factory; the service uses the process-wide one
built from `DATABASE_URL`.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from creditsync.config import get_settings
from creditsync.ledger.models import Base

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def normalize_database_url(db_url: str) -> str:
    """Map a plain sqlite URL onto the aiosqlite driver."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        return db_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return db_url


def build_engine(
    db_url: str, echo: bool = False, busy_timeout: Optional[float] = None
) -> AsyncEngine:
    """Create an async engine for the ledger store.

    For a SQLite file the parent directory is created and each connection
    waits up to `busy_timeout` seconds on a locked database, so concurrent
    conditional updates queue up instead of failing.
    """
    url = make_url(normalize_database_url(db_url))
    connect_args = {}

    if url.get_backend_name() == "sqlite":
        if busy_timeout is None:
            busy_timeout = get_settings().database_busy_timeout
        connect_args["timeout"] = busy_timeout
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_async_engine(url, echo=echo, connect_args=connect_args)


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.database_url,
            echo=settings.debug and not settings.is_production,
            busy_timeout=settings.database_busy_timeout,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on clean exit and rolls back on error."""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create any missing tables."""
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
