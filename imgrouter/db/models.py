"""Database read/write for the key pool snapshot, and the ConfigStore built on it."""

from __future__ import annotations

import json
import logging
import time
from typing import Optional

import aiosqlite

from imgrouter.api.schemas import GatewaySettings, Provider
from imgrouter.db.database import get_db
from imgrouter.services.key_pool import KeyRecord, PoolSnapshot

logger = logging.getLogger("imgrouter.db")


# ── Snapshot CRUD ──────────────────────────────────────────────────────

async def read_snapshot(db: aiosqlite.Connection) -> Optional[PoolSnapshot]:
    """Return the stored snapshot, or None if nothing has been saved yet."""
    cursor = await db.execute("SELECT * FROM pool_state WHERE id = 1")
    state = await cursor.fetchone()
    if state is None:
        return None

    cursor = await db.execute("SELECT * FROM api_keys ORDER BY position ASC")
    records = [_row_to_record(r) for r in await cursor.fetchall()]

    return PoolSnapshot(
        records=records,
        cursor=state["cursor"],
        cursor_usage=state["cursor_usage"],
        settings=GatewaySettings.model_validate(json.loads(state["settings"] or "{}")),
    )


async def write_snapshot(db: aiosqlite.Connection, snapshot: PoolSnapshot) -> None:
    """Replace all stored rows with `snapshot` in a single transaction."""
    try:
        await db.execute("BEGIN IMMEDIATE")
        await db.execute("DELETE FROM api_keys")
        await db.executemany(
            """INSERT INTO api_keys
               (id, position, name, credential, provider, rotation_weight,
                usage_count, suspended, suspended_until, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    r.id, pos, r.name, r.credential, r.provider.value,
                    r.rotation_weight, r.usage_count, 1 if r.suspended else 0,
                    r.suspended_until, r.created_at,
                )
                for pos, r in enumerate(snapshot.records)
            ],
        )
        await db.execute(
            """INSERT INTO pool_state (id, cursor, cursor_usage, settings, updated_at)
               VALUES (1, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 cursor=excluded.cursor,
                 cursor_usage=excluded.cursor_usage,
                 settings=excluded.settings,
                 updated_at=excluded.updated_at""",
            (
                snapshot.cursor,
                snapshot.cursor_usage,
                snapshot.settings.model_dump_json(),
                time.time(),
            ),
        )
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


# ── Store ──────────────────────────────────────────────────────────────

class ConfigStore:
    """load()/save() over SQLite. A failed save leaves the stored data untouched."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path

    async def load(self) -> Optional[PoolSnapshot]:
        async with get_db(self._db_path) as db:
            return await read_snapshot(db)

    async def save(self, snapshot: PoolSnapshot) -> bool:
        try:
            async with get_db(self._db_path) as db:
                await write_snapshot(db, snapshot)
        except (aiosqlite.Error, OSError):
            logger.exception("Failed to save configuration")
            return False
        logger.debug(
            "Configuration saved: %d keys, cursor=%d/%d",
            len(snapshot.records), snapshot.cursor, snapshot.cursor_usage,
        )
        return True


# ── Helpers ────────────────────────────────────────────────────────────

def _row_to_record(row: aiosqlite.Row) -> KeyRecord:
    d = dict(row)
    try:
        provider = Provider(d["provider"])
    except ValueError:
        provider = Provider.UNKNOWN
    return KeyRecord(
        id=d["id"],
        name=d["name"],
        credential=d["credential"],
        provider=provider,
        rotation_weight=d["rotation_weight"],
        usage_count=d["usage_count"],
        suspended=bool(d["suspended"]),
        suspended_until=d["suspended_until"],
        created_at=d["created_at"],
    )
