"""FastAPI application factory.

Creates and configures the FastAPI application with its routes and middleware.

## Usage

```python
from family_calendar.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
```

## Configuration

The app is configured via environment variables. See `family_calendar.config`
for available settings.

## Shared State

Process-wide objects live on ``app.state`` so that every request sees the same
instance:

- ``sync_rate_limiter``: per-connection sync cooldown
- ``family_locks``: per-family reconciliation locks
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from family_calendar.calendar.rate_limit import SyncRateLimiter
from family_calendar.calendar.service import FamilyLocks
from family_calendar.config import get_settings
from family_calendar.database.connection import close_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Opens the database connection on startup and closes it on shutdown.
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    await init_db()

    yield

    logger.info("Shutting down")
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Family calendar with external calendar sync",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Shared across requests so cooldowns and family locks survive them
    app.state.sync_rate_limiter = SyncRateLimiter(settings.sync_rate_limit_seconds)
    app.state.family_locks = FamilyLocks()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    # Include routers
    from family_calendar.api.routes import external_calendars

    app.include_router(
        external_calendars.router,
        prefix="/api/external-calendars",
        tags=["External Calendars"],
    )

    # Health check
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
