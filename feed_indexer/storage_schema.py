from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import aiosqlite

SCHEMA_VERSION = 1


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def initialize_sqlite(conn: aiosqlite.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    await _configure_connection(conn)
    await _apply_migrations(conn)


async def _configure_connection(conn: aiosqlite.Connection) -> None:
    await conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


# Snapshot and thumbnail rows reference items by item_id without a foreign key:
# write ordering (item first) keeps them consistent, and retention deletes them
# independently of their item.
_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS items (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL,
  author TEXT NOT NULL DEFAULT '',
  caption TEXT NOT NULL DEFAULT '',
  hashtags_json TEXT NOT NULL DEFAULT '[]',
  first_seen_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_author
  ON items(author);

CREATE INDEX IF NOT EXISTS idx_items_first_seen_at
  ON items(first_seen_at);

CREATE TABLE IF NOT EXISTS snapshots (
  key TEXT PRIMARY KEY,
  item_id TEXT NOT NULL,
  captured_at INTEGER NOT NULL,
  image BLOB NOT NULL,
  analysis_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_snapshots_item_id
  ON snapshots(item_id);

CREATE INDEX IF NOT EXISTS idx_snapshots_captured_at
  ON snapshots(captured_at);

CREATE TABLE IF NOT EXISTS thumbnails (
  key TEXT PRIMARY KEY,
  item_id TEXT NOT NULL,
  url TEXT NOT NULL DEFAULT '',
  captured_at INTEGER NOT NULL,
  data_uri TEXT NOT NULL,
  width INTEGER NOT NULL DEFAULT 0,
  height INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_thumbnails_item_id
  ON thumbnails(item_id);

CREATE INDEX IF NOT EXISTS idx_thumbnails_captured_at
  ON thumbnails(captured_at);

CREATE TABLE IF NOT EXISTS postings (
  token TEXT PRIMARY KEY,
  item_ids_json TEXT NOT NULL
);
""".strip()
}


async def _apply_migrations(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    await conn.commit()

    async with conn.execute("SELECT version FROM schema_migrations") as cursor:
        rows = await cursor.fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        await conn.executescript(script)
        await conn.execute(
            "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
            (version, _utc_now_iso()),
        )
        await conn.commit()


async def schema_version(conn: aiosqlite.Connection) -> int:
    async with conn.execute("SELECT MAX(version) FROM schema_migrations") as cursor:
        row = await cursor.fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])
