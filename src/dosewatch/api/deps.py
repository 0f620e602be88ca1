"""Process-wide dependencies for the dosewatch API.

Routers declare module-level ``_get_pool`` / ``_get_policy`` stubs that raise
until :func:`wire_dependencies` overrides them with the singletons created
at startup.  Tests override the same stubs with fakes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from dosewatch.config import DosewatchConfig
from dosewatch.db import Database
from dosewatch.dosing.recording import RecordingPolicy

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_database: Database | None = None
_pool: Any = None
_config: DosewatchConfig | None = None


def init_config(config: DosewatchConfig | None = None) -> DosewatchConfig:
    global _config  # noqa: PLW0603
    _config = config or DosewatchConfig()
    return _config


def get_config() -> DosewatchConfig:
    """FastAPI dependency: provides the loaded DosewatchConfig."""
    if _config is None:
        raise RuntimeError("DosewatchConfig not initialized; call init_config() first")
    return _config


def get_policy() -> RecordingPolicy:
    """FastAPI dependency: the recording policy derived from the config."""
    return RecordingPolicy.from_config(get_config())


async def init_database(config: DosewatchConfig) -> Any:
    """Provision the database and open the shared pool.

    Called once during app startup (in the lifespan handler).
    """
    global _database, _pool  # noqa: PLW0603
    db = Database.from_env(config.db_name, schema=config.db_schema)
    await db.provision()
    _pool = await db.connect()
    _database = db
    return _pool


def use_pool(pool: Any) -> None:
    """Install an externally owned pool (tests, embedding applications)."""
    global _pool  # noqa: PLW0603
    _pool = pool


async def shutdown_database() -> None:
    global _database, _pool  # noqa: PLW0603
    if _database is not None:
        await _database.close()
        _database = None
    _pool = None


def get_pool() -> Any:
    """FastAPI dependency: provides the shared asyncpg pool."""
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_database() first")
    return _pool


def wire_dependencies(app: FastAPI) -> None:
    """Override every router-level ``_get_pool`` / ``_get_policy`` stub."""
    from dosewatch.api.routers import administrations, doses

    for module in (administrations, doses):
        app.dependency_overrides[module._get_pool] = get_pool
        if hasattr(module, "_get_policy"):
            app.dependency_overrides[module._get_policy] = get_policy
        logger.debug("Wired dependencies for router module: %s", module.__name__)
