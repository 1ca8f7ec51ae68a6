"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  kv_store   — per-user key/value pairs (API key, in-progress scan session)
  scan_logs  — one row per finalized scan (provider, mode, outcome)

The DB file is created automatically on first run.

kv_store semantics:
  • scope = the Telegram user id, so every user has a private namespace
  • put is a single-row upsert → atomic per key, last writer wins
  • a missing key reads as None — callers treat that as "not configured yet"
  • I/O errors are raised to the caller
"""
from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "scanner.db")
_lock = asyncio.Lock()          # serialise schema creation


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    scope      TEXT NOT NULL,
    key        TEXT NOT NULL,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (scope, key)
);

CREATE TABLE IF NOT EXISTS scan_logs (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id       INTEGER NOT NULL,
    mode          TEXT    NOT NULL,
    provider_used TEXT    NOT NULL DEFAULT 'unknown',
    outcome       TEXT    NOT NULL,
    drug_name     TEXT    NOT NULL DEFAULT '',
    cost_usd      REAL    NOT NULL DEFAULT 0,
    scanned_at    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scan_logs_at ON scan_logs (scanned_at);
"""


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Key/value operations ──────────────────────────────────────────────────────

async def kv_get(scope: str, key: str) -> Optional[str]:
    """Return the stored value, or None if the key was never set."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT value FROM kv_store WHERE scope = ? AND key = ?", (scope, key)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def kv_put(scope: str, key: str, value: str) -> None:
    """Insert or replace a single key."""
    now = datetime.now(timezone.utc).isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO kv_store (scope, key, value, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(scope, key) DO UPDATE SET
                 value=excluded.value,
                 updated_at=excluded.updated_at""",
            (scope, key, value, now),
        )
        await db.commit()


async def kv_delete(scope: str, key: str) -> bool:
    """Remove a key. Returns True if a row was deleted."""
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(
            "DELETE FROM kv_store WHERE scope = ? AND key = ?", (scope, key)
        )
        await db.commit()
        return cursor.rowcount > 0


# ── Scan log ──────────────────────────────────────────────────────────────────

async def log_scan(
    user_id: int,
    mode: str,
    provider_used: str,
    outcome: str,
    drug_name: str = "",
    cost_usd: float = 0.0,
) -> None:
    """Record a finalized scan. outcome: identified | not_identified | found | not_found"""
    now = datetime.now(timezone.utc).isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """INSERT INTO scan_logs
               (user_id, mode, provider_used, outcome, drug_name, cost_usd, scanned_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (user_id, mode, provider_used, outcome, drug_name, cost_usd, now),
        )
        await db.commit()


async def get_user_stats(user_id: int) -> dict:
    """Return per-user scan counts for /settings."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            "SELECT COUNT(*), COALESCE(SUM(cost_usd), 0) FROM scan_logs WHERE user_id = ?",
            (user_id,),
        ) as cur:
            total, cost = await cur.fetchone()

        async with db.execute(
            "SELECT scanned_at FROM scan_logs WHERE user_id = ? ORDER BY scanned_at DESC LIMIT 1",
            (user_id,),
        ) as cur:
            row = await cur.fetchone()
            last_scan = row[0] if row else "never"

    return {"total_scans": total, "total_cost_usd": cost, "last_scan": last_scan}
