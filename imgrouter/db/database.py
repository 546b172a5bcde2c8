"""SQLite database initialization and connection management."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import aiosqlite

logger = logging.getLogger("imgrouter.db")

DB_PATH = os.environ.get("IMGROUTER_DB_PATH", "imgrouter.db")

# ── Schema ─────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id              TEXT PRIMARY KEY,
    position        INTEGER NOT NULL,
    name            TEXT NOT NULL,
    credential      TEXT NOT NULL,
    provider        TEXT NOT NULL,
    rotation_weight INTEGER NOT NULL DEFAULT 1,
    usage_count     INTEGER NOT NULL DEFAULT 0,
    suspended       INTEGER NOT NULL DEFAULT 0,
    suspended_until REAL,
    created_at      REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_api_keys_position ON api_keys(position);

CREATE TABLE IF NOT EXISTS pool_state (
    id              INTEGER PRIMARY KEY CHECK (id = 1),
    cursor          INTEGER NOT NULL DEFAULT 0,
    cursor_usage    INTEGER NOT NULL DEFAULT 0,
    settings        TEXT NOT NULL DEFAULT '{}',
    updated_at      REAL
);
"""


# ── Public API ────────────────────────────────────────────────────────

async def init_db(db_path: str | None = None) -> None:
    """Initialize database: create parent directory and apply schema."""
    path = db_path or DB_PATH
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    async with aiosqlite.connect(path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.executescript(SCHEMA_SQL)
        await db.commit()
    logger.debug("Schema applied to %s", path)


@asynccontextmanager
async def get_db(db_path: str | None = None) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Get an async database connection."""
    path = db_path or DB_PATH
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    try:
        yield db
    finally:
        await db.close()
