"""Dosewatch API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the database pool and runs the dose sweeper
- Health endpoint at GET /api/health
- Administration, dose status and compliance routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dosewatch import __version__
from dosewatch.api import deps
from dosewatch.api.middleware import register_error_handlers
from dosewatch.api.routers.administrations import router as administrations_router
from dosewatch.api.routers.doses import router as doses_router
from dosewatch.config import DosewatchConfig
from dosewatch.core.sweeper import DoseSweeper
from dosewatch.dosing.models import Tolerance

logger = logging.getLogger(__name__)


def create_app(
    config: DosewatchConfig | None = None,
    *,
    pool: Any = None,
    cors_origins: list[str] | None = None,
    run_sweeper: bool | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed configuration; defaults apply when omitted.
    pool:
        An already-open asyncpg pool.  When omitted the lifespan provisions
        the database from ``DATABASE_URL`` / ``POSTGRES_*`` and owns the pool.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    run_sweeper:
        Force the background sweeper on or off; defaults to
        ``config.sweeper.enabled``.
    """
    config = config or DosewatchConfig()
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]
    sweeper_enabled = config.sweeper.enabled if run_sweeper is None else run_sweeper

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        deps.init_config(config)
        if pool is not None:
            deps.use_pool(pool)
        else:
            await deps.init_database(config)
        deps.wire_dependencies(app)

        sweeper: DoseSweeper | None = None
        if sweeper_enabled:
            sweeper = DoseSweeper(
                deps.get_pool(),
                config.sweeper,
                tolerance=Tolerance.from_config(config.tolerance),
            )
            sweeper.start()
        app.state.sweeper = sweeper

        yield

        if sweeper is not None:
            await sweeper.stop()
        await deps.shutdown_database()

    app = FastAPI(
        title="Dosewatch API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.sweeper = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(administrations_router)
    app.include_router(doses_router)

    @app.get("/api/health")
    async def health():
        sweeper = app.state.sweeper
        return {
            "status": "ok",
            "sweeper": sweeper.status().to_dict() if sweeper is not None else None,
        }

    return app
