from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Generic, Mapping, TypeVar

import aiosqlite

from .errors import StorageError
from .records import Item, Posting, Snapshot, SnapshotAnalysis, Thumbnail
from .storage_schema import initialize_sqlite, schema_version

R = TypeVar("R")

_DIRECTIONS = {"asc": "ASC", "desc": "DESC"}


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_str_list(raw: Any) -> tuple[str, ...]:
    text = (raw or "").strip() if isinstance(raw, str) else ""
    if not text:
        return ()
    try:
        val = json.loads(text)
    except Exception as e:
        raise StorageError(f"Stored JSON list could not be parsed: {e}") from e
    if not isinstance(val, list):
        raise StorageError("Stored JSON was not a list")
    return tuple(str(v) for v in val)


def _as_path(value: str | Path) -> str:
    return str(value)


@dataclass(frozen=True)
class _Table:
    name: str
    key_column: str
    columns: tuple[str, ...]
    indexed: frozenset[str]


def _item_to_row(item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "url": item.url,
        "author": item.author or "",
        "caption": item.caption or "",
        "hashtags_json": _json_dumps(list(item.hashtags)),
        "first_seen_at": int(item.first_seen_at),
    }


def _item_from_row(row: Mapping[str, Any]) -> Item:
    return Item(
        id=str(row["id"]),
        url=str(row["url"]),
        author=str(row["author"] or ""),
        caption=str(row["caption"] or ""),
        hashtags=_json_str_list(row["hashtags_json"]),
        first_seen_at=int(row["first_seen_at"]),
    )


def _snapshot_to_row(snap: Snapshot) -> dict[str, Any]:
    analysis_json = None
    if snap.analysis is not None:
        analysis_json = _json_dumps(
            {
                "labels": list(snap.analysis.labels),
                "text": snap.analysis.text,
                "objects": list(snap.analysis.objects),
            }
        )
    return {
        "key": snap.key,
        "item_id": snap.item_id,
        "captured_at": int(snap.captured_at),
        "image": bytes(snap.image_bytes),
        "analysis_json": analysis_json,
    }


def _snapshot_from_row(row: Mapping[str, Any]) -> Snapshot:
    analysis = None
    raw = row["analysis_json"]
    if raw:
        try:
            val = json.loads(raw)
        except Exception as e:
            raise StorageError(f"Stored analysis_json could not be parsed: {e}") from e
        if isinstance(val, dict):
            analysis = SnapshotAnalysis(
                labels=tuple(str(v) for v in val.get("labels") or []),
                text=str(val.get("text") or ""),
                objects=tuple(str(v) for v in val.get("objects") or []),
            )
    image = row["image"]
    return Snapshot(
        key=str(row["key"]),
        item_id=str(row["item_id"]),
        captured_at=int(row["captured_at"]),
        image_bytes=bytes(image) if image is not None else b"",
        analysis=analysis,
    )


def _thumbnail_to_row(thumb: Thumbnail) -> dict[str, Any]:
    return {
        "key": thumb.key,
        "item_id": thumb.item_id,
        "url": thumb.url or "",
        "captured_at": int(thumb.captured_at),
        "data_uri": thumb.data_uri,
        "width": int(thumb.width),
        "height": int(thumb.height),
    }


def _thumbnail_from_row(row: Mapping[str, Any]) -> Thumbnail:
    return Thumbnail(
        key=str(row["key"]),
        item_id=str(row["item_id"]),
        url=str(row["url"] or ""),
        captured_at=int(row["captured_at"]),
        data_uri=str(row["data_uri"]),
        width=int(row["width"] or 0),
        height=int(row["height"] or 0),
    )


def _posting_to_row(posting: Posting) -> dict[str, Any]:
    return {"token": posting.token, "item_ids_json": _json_dumps(list(posting.item_ids))}


def _posting_from_row(row: Mapping[str, Any]) -> Posting:
    return Posting(token=str(row["token"]), item_ids=_json_str_list(row["item_ids_json"]))


ITEMS = _Table(
    name="items",
    key_column="id",
    columns=("id", "url", "author", "caption", "hashtags_json", "first_seen_at"),
    indexed=frozenset({"author", "first_seen_at"}),
)
SNAPSHOTS = _Table(
    name="snapshots",
    key_column="key",
    columns=("key", "item_id", "captured_at", "image", "analysis_json"),
    indexed=frozenset({"item_id", "captured_at"}),
)
THUMBNAILS = _Table(
    name="thumbnails",
    key_column="key",
    columns=("key", "item_id", "url", "captured_at", "data_uri", "width", "height"),
    indexed=frozenset({"item_id", "captured_at"}),
)
POSTINGS = _Table(
    name="postings",
    key_column="token",
    columns=("token", "item_ids_json"),
    indexed=frozenset(),
)


class Collection(Generic[R]):
    """
    One keyed collection of records backed by a single table.

    Every method is atomic for the single record it touches; nothing here
    spans collections.
    """

    def __init__(
        self,
        store: "SQLiteStore",
        table: _Table,
        *,
        to_row: Callable[[R], dict[str, Any]],
        from_row: Callable[[Mapping[str, Any]], R],
    ) -> None:
        self._store = store
        self._table = table
        self._to_row = to_row
        self._from_row = from_row

        cols = ", ".join(table.columns)
        self._select = f"SELECT {cols} FROM {table.name}"

        placeholders = ", ".join("?" for _ in table.columns)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in table.columns if c != table.key_column
        )
        self._upsert = (
            f"INSERT INTO {table.name}({cols}) VALUES ({placeholders}) "
            f"ON CONFLICT({table.key_column}) DO UPDATE SET {updates}"
        )
        self._insert_new = (
            f"INSERT INTO {table.name}({cols}) VALUES ({placeholders}) "
            f"ON CONFLICT({table.key_column}) DO NOTHING"
        )

    @property
    def name(self) -> str:
        return self._table.name

    def _require_indexed(self, field: str) -> str:
        if field not in self._table.indexed:
            raise ValueError(f"{self._table.name} has no secondary index on {field!r}")
        return field

    async def get(self, key: str) -> R | None:
        rows = await self._store._fetch(
            f"{self._select} WHERE {self._table.key_column} = ?",
            (key,),
        )
        if not rows:
            return None
        return self._from_row(rows[0])

    async def put(self, record: R) -> None:
        row = self._to_row(record)
        params = tuple(row[c] for c in self._table.columns)
        await self._store._write(self._upsert, params, what=f"put into {self._table.name}")

    async def insert_if_absent(self, record: R) -> bool:
        """Insert record unless its key exists; True when this call wrote it."""
        row = self._to_row(record)
        params = tuple(row[c] for c in self._table.columns)
        written = await self._store._write(
            self._insert_new, params, what=f"insert into {self._table.name}"
        )
        return written > 0

    async def delete(self, key: str) -> None:
        await self._store._write(
            f"DELETE FROM {self._table.name} WHERE {self._table.key_column} = ?",
            (key,),
            what=f"delete from {self._table.name}",
        )

    async def get_all_by_field(self, field: str, value: Any) -> list[R]:
        col = self._require_indexed(field)
        rows = await self._store._fetch(
            f"{self._select} WHERE {col} = ? ORDER BY {col}, {self._table.key_column}",
            (value,),
        )
        return [self._from_row(r) for r in rows]

    async def iterate_ordered_by_field(
        self,
        field: str,
        direction: str = "asc",
        max_results: int | None = None,
        *,
        below: Any = None,
    ) -> AsyncIterator[R]:
        """
        Yield records ordered by a secondary field.

        `below` is an exclusive upper bound on the field. Rows are read before
        the first yield, so callers may delete what they are handed.
        """
        col = self._require_indexed(field)
        order = _DIRECTIONS.get((direction or "").strip().lower())
        if order is None:
            raise ValueError("direction must be 'asc' or 'desc'")
        if max_results is not None and max_results <= 0:
            return

        sql = self._select
        params: list[Any] = []
        if below is not None:
            sql += f" WHERE {col} < ?"
            params.append(below)
        sql += f" ORDER BY {col} {order}, {self._table.key_column} {order}"
        if max_results is not None:
            sql += " LIMIT ?"
            params.append(int(max_results))

        rows = await self._store._fetch(sql, tuple(params))
        for r in rows:
            yield self._from_row(r)

    async def scan(self, max_results: int | None = None) -> AsyncIterator[R]:
        """Yield every record in key order."""
        if max_results is not None and max_results <= 0:
            return
        sql = f"{self._select} ORDER BY {self._table.key_column}"
        params: tuple[Any, ...] = ()
        if max_results is not None:
            sql += " LIMIT ?"
            params = (int(max_results),)
        for r in await self._store._fetch(sql, params):
            yield self._from_row(r)

    async def count(self) -> int:
        rows = await self._store._fetch(f"SELECT COUNT(1) AS n FROM {self._table.name}", ())
        return int(rows[0]["n"]) if rows else 0

    async def count_by_field(self, field: str, value: Any) -> int:
        col = self._require_indexed(field)
        rows = await self._store._fetch(
            f"SELECT COUNT(1) AS n FROM {self._table.name} WHERE {col} = ?",
            (value,),
        )
        return int(rows[0]["n"]) if rows else 0

    async def clear(self) -> None:
        await self._store._write(
            f"DELETE FROM {self._table.name}", (), what=f"clear {self._table.name}"
        )


class SQLiteStore:
    """
    Durable home of items, snapshots, thumbnails and postings.

    Construct one per process and hand it to every component. `open()` is
    idempotent and every collection call opens lazily, so callers never see
    an "uninitialized" error.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = _as_path(path)
        self._conn: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

        self.items: Collection[Item] = Collection(
            self, ITEMS, to_row=_item_to_row, from_row=_item_from_row
        )
        self.snapshots: Collection[Snapshot] = Collection(
            self, SNAPSHOTS, to_row=_snapshot_to_row, from_row=_snapshot_from_row
        )
        self.thumbnails: Collection[Thumbnail] = Collection(
            self, THUMBNAILS, to_row=_thumbnail_to_row, from_row=_thumbnail_from_row
        )
        self.postings: Collection[Posting] = Collection(
            self, POSTINGS, to_row=_posting_to_row, from_row=_posting_from_row
        )

    @classmethod
    async def connect(cls, path: str | Path) -> "SQLiteStore":
        store = cls(path)
        await store.open()
        return store

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def collections(self) -> tuple[Collection[Any], ...]:
        return (self.items, self.snapshots, self.thumbnails, self.postings)

    async def open(self) -> None:
        if self._conn is not None:
            return

        async with self._open_lock:
            if self._conn is not None:
                return

            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = await aiosqlite.connect(self._path)
            except sqlite3.DatabaseError as e:
                raise StorageError(f"Failed to open sqlite database: {self._path}: {e}") from e

            conn.row_factory = aiosqlite.Row
            try:
                await initialize_sqlite(conn)
            except Exception as e:
                await conn.close()
                raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

            self._conn = conn

    async def close(self) -> None:
        async with self._open_lock:
            if self._conn is None:
                return
            conn, self._conn = self._conn, None
            await conn.close()

    async def __aenter__(self) -> "SQLiteStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.close()

    async def schema_version(self) -> int:
        conn = await self._connection()
        return await schema_version(conn)

    async def _connection(self) -> aiosqlite.Connection:
        await self.open()
        assert self._conn is not None
        return self._conn

    async def _fetch(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        conn = await self._connection()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Query failed: {e}") from e

    async def _write(self, sql: str, params: tuple[Any, ...], *, what: str) -> int:
        """Run one statement and commit it; returns the number of rows changed."""
        conn = await self._connection()
        # One statement per commit; the lock keeps a rollback from discarding
        # another task's pending write on the shared connection.
        async with self._write_lock:
            try:
                async with conn.execute(sql, params) as cursor:
                    changed = cursor.rowcount
                await conn.commit()
                return max(int(changed), 0)
            except sqlite3.DatabaseError as e:
                try:
                    await conn.rollback()
                except sqlite3.DatabaseError:
                    pass
                raise StorageError(f"Failed to {what}: {e}") from e
