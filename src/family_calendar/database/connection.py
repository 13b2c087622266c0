"""Async engine and session lifecycle.

One engine per process, created by `init_db()` at startup (API lifespan or
CLI command) and disposed by `close_db()`. Sessions are short-lived: one per
HTTP request or CLI run, shared by the repositories built on it.

## Supported URLs

- ``postgresql+asyncpg://...`` in deployments (pooled, pre-pinged)
- ``sqlite+aiosqlite://...`` for local tooling and tests (pool options
  do not apply)

## Usage

```python
from family_calendar.database import get_db, init_db
from family_calendar.repositories import build_sql_repositories

await init_db()

async with get_db() as session:
    calendar_repo, event_repo, family_repo, log_repo = build_sql_repositories(session)
```
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from family_calendar.config import Settings, get_settings
from family_calendar.database.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.database_echo}
    if url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
    )
    return options


def _require_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


async def init_db(database_url: str | None = None) -> None:
    """Create the process-wide engine and session factory.

    Args:
        database_url: Override for DATABASE_URL (e.g. a test database)
    """
    global _engine, _session_factory

    settings = get_settings()
    url = database_url or settings.database_url
    dialect = url.split(":", 1)[0]
    logger.info(f"Initializing database engine ({dialect})")

    _engine = create_async_engine(url, **_engine_options(url, settings))
    # Rows outlive commits: services read attributes after repositories commit
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose of the engine, if one was created."""
    global _engine, _session_factory

    if _engine is None:
        return
    logger.info("Closing database engine")
    await _engine.dispose()
    _engine = None
    _session_factory = None


async def create_tables() -> None:
    """Create all tables that do not exist yet.

    Meant for development databases and the ``init-db`` CLI command.
    """
    async with _require_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Ensured tables: {', '.join(sorted(Base.metadata.tables))}")


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Open a session for one unit of work.

    Repositories commit their own writes; anything left pending when the
    block raises is rolled back.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    async with _session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_db() as session:
        yield session
