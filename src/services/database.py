"""asyncpg pool for the tracking tables.

Every pooled connection decodes ``jsonb`` columns to Python objects, so the
activity log's ``changes`` dict goes in and comes out without manual
serialization.

``get_connection(user_id=...)`` opens a transaction and sets
``app.current_user_id`` with ``set_config(..., true)`` for the length of that
transaction.  ``schema.sql`` defines no Row-Level Security policies; the
setting is there for deployments that add them, and every store query
already filters by owner or id itself.  The sweeps call it without a user id.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("mikvahcal.db")

_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema="pg_catalog",
    )


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Open the pool. Called from the app lifespan before any store is used."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.database_pool_min,
        max_size=s.database_pool_max,
        command_timeout=s.database_command_timeout,
        init=_init_connection,
        server_settings={"application_name": s.app_name.lower()},
    )
    logger.info(
        "Database pool ready (min=%d, max=%d, timeout=%ss)",
        s.database_pool_min,
        s.database_pool_max,
        s.database_command_timeout,
    )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: uuid.UUID | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Yield a pooled connection inside a transaction.

    Usage::

        async with get_connection(user_id=user_id) as conn:
            rows = await conn.fetch("SELECT * FROM cycles WHERE user_id = $1", user_id)
    """
    async with get_pool().acquire() as conn:
        async with conn.transaction():
            if user_id is not None:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )
            yield conn
