from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .colors import DetectedColor, detect_colors, is_color_query
from .config_schema import AppConfig
from .errors import ExternalServiceError, StorageError, ValidationError
from .index import InvertedIndex
from .normalize import item_from_payload, snapshot_from_payload, thumbnail_from_payload
from .records import Item, Snapshot, SnapshotAnalysis, Thumbnail
from .retention import RetentionManager, RetentionReport, RetentionScheduler
from .run_log import EventLogger, NullLogger
from .storage import SQLiteStore
from .tokenize import tokens_for_analysis, tokens_for_item
from .vision import VisionAnalyzer, encode_image_base64


@dataclass(frozen=True)
class IngestResult:
    ok: bool
    status: str
    key: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class AnalyzeResult:
    ok: bool
    analysis: SnapshotAnalysis | None = None
    error: str | None = None


@dataclass(frozen=True)
class IndexStats:
    items: int
    snapshots: int
    thumbnails: int


@dataclass(frozen=True)
class SearchHit:
    item: Item
    colors: Sequence[DetectedColor] = field(default_factory=tuple)


class Indexer:
    """
    Entry point for capture agents and UIs.

    Writes are sagas, not transactions: an item row lands before its postings,
    a snapshot's analysis tokens land before the snapshot row. Every step is
    idempotent, so a crash between steps leaves valid (if incomplete) data.
    """

    def __init__(
        self,
        store: SQLiteStore,
        config: AppConfig | None = None,
        *,
        analyzer: VisionAnalyzer | None = None,
        logger: EventLogger | None = None,
        start_retention: bool = False,
    ) -> None:
        self._store = store
        self._cfg = config or AppConfig()
        self._analyzer = analyzer
        self._log = logger or NullLogger()
        self._index = InvertedIndex(store)
        self._retention = RetentionManager(store, self._cfg.retention, logger=self._log)
        self._start_retention = bool(start_retention)
        self._scheduler: RetentionScheduler | None = None

    @property
    def store(self) -> SQLiteStore:
        return self._store

    @property
    def index(self) -> InvertedIndex:
        return self._index

    @property
    def retention(self) -> RetentionManager:
        return self._retention

    @property
    def analysis_enabled(self) -> bool:
        return bool(self._cfg.vision.enabled) and self._analyzer is not None

    def retention_scheduler(self) -> RetentionScheduler:
        return RetentionScheduler(
            self._retention,
            interval_seconds=self._cfg.retention.interval_seconds,
            logger=self._log,
        )

    @property
    def scheduler(self) -> RetentionScheduler | None:
        """The retention loop started on open, if start_retention was requested."""
        return self._scheduler

    async def __aenter__(self) -> "Indexer":
        await self._store.open()
        if self._start_retention and self._scheduler is None:
            scheduler = self.retention_scheduler()
            await scheduler.start()
            self._scheduler = scheduler
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        try:
            if self._scheduler is not None:
                await self._scheduler.stop()
                self._scheduler = None
        finally:
            await self._store.close()

    async def ingest_item(self, payload: Mapping[str, Any]) -> IngestResult:
        await self._store.open()
        try:
            item = item_from_payload(payload)
        except ValidationError as e:
            self._log.warning("item_rejected", reason=str(e))
            return IngestResult(ok=False, status="invalid_payload", error=str(e))

        try:
            if not await self._store.items.insert_if_absent(item):
                self._log.info("item_already_indexed", item_id=item.id)
                return IngestResult(ok=True, status="already_indexed", key=item.id)

            tokens = tokens_for_item(item)
            await self._index.index_tokens(item.id, tokens)
        except StorageError as e:
            self._log.exception("item_write_failed", exc=e, item_id=item.id)
            return IngestResult(ok=False, status="store_error", key=item.id, error=str(e))

        self._log.info("item_indexed", item_id=item.id, tokens=len(tokens))
        return IngestResult(ok=True, status="indexed", key=item.id)

    async def ingest_snapshot(self, payload: Mapping[str, Any]) -> IngestResult:
        await self._store.open()
        try:
            snap = snapshot_from_payload(payload)
        except ValidationError as e:
            self._log.warning("snapshot_rejected", reason=str(e))
            return IngestResult(ok=False, status="invalid_payload", error=str(e))

        if self.analysis_enabled:
            analysis = await self._analyze_bytes(snap.image_bytes, item_id=snap.item_id)
            if analysis is not None:
                snap = dataclasses.replace(snap, analysis=analysis)
                try:
                    await self._index.index_tokens(snap.item_id, tokens_for_analysis(analysis))
                except StorageError as e:
                    # Missing postings only cost recall; the snapshot still gets written.
                    self._log.exception("analysis_index_failed", exc=e, item_id=snap.item_id)

        try:
            await self._store.snapshots.put(snap)
        except StorageError as e:
            self._log.exception("snapshot_write_failed", exc=e, item_id=snap.item_id)
            return IngestResult(ok=False, status="store_error", key=snap.key, error=str(e))

        self._log.info(
            "snapshot_stored",
            item_id=snap.item_id,
            key=snap.key,
            size=len(snap.image_bytes),
            analyzed=snap.analysis is not None,
        )
        return IngestResult(ok=True, status="stored", key=snap.key)

    async def ingest_thumbnail(self, payload: Mapping[str, Any]) -> IngestResult:
        await self._store.open()
        try:
            thumb = thumbnail_from_payload(payload)
        except ValidationError as e:
            self._log.warning("thumbnail_rejected", reason=str(e))
            return IngestResult(ok=False, status="invalid_payload", error=str(e))

        cap = int(self._cfg.thumbnails.max_per_item)
        try:
            existing = await self._store.thumbnails.get_all_by_field("item_id", thumb.item_id)
            existing = [t for t in existing if t.key != thumb.key]
            evicted = 0
            if len(existing) >= cap:
                existing.sort(key=lambda t: (t.captured_at, t.key))
                for old in existing[: len(existing) - cap + 1]:
                    await self._store.thumbnails.delete(old.key)
                    evicted += 1
            await self._store.thumbnails.put(thumb)
        except StorageError as e:
            self._log.exception("thumbnail_write_failed", exc=e, item_id=thumb.item_id)
            return IngestResult(ok=False, status="store_error", key=thumb.key, error=str(e))

        if evicted:
            self._log.info("thumbnails_evicted", item_id=thumb.item_id, count=evicted)
        return IngestResult(ok=True, status="stored", key=thumb.key)

    async def search(self, query: str) -> list[Item]:
        """Items matching at least one query token, best match first."""
        await self._store.open()
        out: list[Item] = []
        for item_id in await self._index.search(query):
            item = await self._store.items.get(item_id)
            if item is None:
                continue
            out.append(item)
        return out

    async def search_with_colors(
        self, query: str, *, max_items: int | None = None
    ) -> list[SearchHit]:
        """
        Search, then attach dominant colors when the query asks about color.

        Only the first max_items hits (colors.max_items by default) are analyzed.
        """
        items = await self.search(query)
        if not items or not is_color_query(query):
            return [SearchHit(item=it) for it in items]

        limit = int(self._cfg.colors.max_items if max_items is None else max_items)
        hits: list[SearchHit] = []
        for pos, item in enumerate(items):
            colors: list[DetectedColor] = []
            if pos < limit:
                colors = await self.detect_item_colors(item.id)
            hits.append(SearchHit(item=item, colors=tuple(colors)))
        return hits

    async def detect_item_colors(
        self, item_id: str, num_colors: int | None = None
    ) -> list[DetectedColor]:
        snap = await self.representative_snapshot(item_id)
        if snap is None:
            return []
        k = int(self._cfg.colors.num_colors if num_colors is None else num_colors)
        try:
            return detect_colors(
                snap.image_bytes, k, max_size=int(self._cfg.colors.max_sample_size)
            )
        except ValidationError as e:
            self._log.warning("color_detection_failed", item_id=item_id, key=snap.key, reason=str(e))
            return []

    async def representative_snapshot(self, item_id: str) -> Snapshot | None:
        snaps = await self.list_snapshots(item_id)
        if not snaps:
            return None
        return snaps[len(snaps) // 2]

    async def stats(self) -> IndexStats:
        await self._store.open()
        return IndexStats(
            items=await self._store.items.count(),
            snapshots=await self._store.snapshots.count(),
            thumbnails=await self._store.thumbnails.count(),
        )

    async def get_item(self, item_id: str) -> Item | None:
        await self._store.open()
        return await self._store.items.get(item_id)

    async def get_snapshot(self, key: str) -> Snapshot | None:
        await self._store.open()
        return await self._store.snapshots.get(key)

    async def list_snapshots(self, item_id: str, *, include_images: bool = True) -> list[Snapshot]:
        await self._store.open()
        snaps = await self._store.snapshots.get_all_by_field("item_id", item_id)
        snaps.sort(key=lambda s: (s.captured_at, s.key))
        if not include_images:
            snaps = [dataclasses.replace(s, image_bytes=b"") for s in snaps]
        return snaps

    async def snapshot_count(self, item_id: str) -> int:
        await self._store.open()
        return await self._store.snapshots.count_by_field("item_id", item_id)

    async def list_thumbnails(self, item_id: str) -> list[Thumbnail]:
        """Thumbnails of one item, newest first."""
        await self._store.open()
        thumbs = await self._store.thumbnails.get_all_by_field("item_id", item_id)
        thumbs.sort(key=lambda t: (t.captured_at, t.key), reverse=True)
        return thumbs

    async def recent_items(self, limit: int = 100) -> list[Item]:
        await self._store.open()
        return [
            item
            async for item in self._store.items.iterate_ordered_by_field(
                "first_seen_at", "desc", limit
            )
        ]

    async def analyze_snapshot(self, key: str) -> AnalyzeResult:
        """Run vision analysis on a stored snapshot and index what it finds."""
        await self._store.open()
        if not self.analysis_enabled:
            return AnalyzeResult(ok=False, error="analysis_unavailable")

        try:
            snap = await self._store.snapshots.get(key)
        except StorageError as e:
            self._log.exception("snapshot_read_failed", exc=e, key=key)
            return AnalyzeResult(ok=False, error="store_error")
        if snap is None:
            return AnalyzeResult(ok=False, error="not_found")

        analysis = await self._analyze_bytes(snap.image_bytes, item_id=snap.item_id)
        if analysis is None:
            return AnalyzeResult(ok=False, error="analysis_failed")

        try:
            await self._store.snapshots.put(dataclasses.replace(snap, analysis=analysis))
            await self._index.index_tokens(snap.item_id, tokens_for_analysis(analysis))
        except StorageError as e:
            self._log.exception("analysis_write_failed", exc=e, item_id=snap.item_id, key=key)
            return AnalyzeResult(ok=False, error="store_error")
        return AnalyzeResult(ok=True, analysis=analysis)

    async def run_retention(self, now: int | None = None) -> RetentionReport:
        await self._store.open()
        return await self._retention.run_cycle(now)

    async def clear_all(self) -> None:
        await self._store.open()
        for collection in self._store.collections():
            await collection.clear()
        self._log.info("index_cleared")

    async def _analyze_bytes(self, image_bytes: bytes, *, item_id: str) -> SnapshotAnalysis | None:
        if self._analyzer is None or not image_bytes:
            return None
        try:
            return await self._analyzer.analyze(encode_image_base64(image_bytes))
        except ExternalServiceError as e:
            self._log.warning("vision_analysis_failed", item_id=item_id, reason=str(e))
            return None
