from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from .api import Indexer
from .config import config_sha256, load_config, resolve_vision_api_key
from .config_schema import AppConfig
from .errors import ConfigError, ExportError, StorageError, ValidationError
from .export_excel import export_index_workbook
from .normalize import encode_image_frame
from .records import Item
from .retention import now_ms
from .run_log import RunLogger
from .storage import SQLiteStore
from .vision import OpenAIVisionAnalyzer, VisionAnalyzer

DEFAULT_LOG_NAME = "feed_indexer.log"

_Command = Callable[[Indexer, argparse.Namespace], Awaitable[int]]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feed_indexer")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config file (defaults apply when omitted).",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path; overrides storage.db_path.",
    )
    parser.add_argument(
        "--log",
        default=None,
        help="JSONL event log path (default: feed_indexer.log beside the database).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Index items from a JSONL file, one payload per line.")
    ingest.add_argument("items", help="Path to a .jsonl file of item payloads.")
    ingest.set_defaults(_handler=_cmd_ingest)

    snap = subparsers.add_parser("add-snapshot", help="Store an image file as a snapshot of an item.")
    snap.add_argument("--item-id", required=True, help="Item the frame belongs to.")
    snap.add_argument("--image", required=True, help="Path to the image file.")
    snap.add_argument(
        "--captured-at",
        type=int,
        default=None,
        help="Capture time in epoch milliseconds (default: now).",
    )
    snap.set_defaults(_handler=_cmd_add_snapshot)

    search = subparsers.add_parser("search", help="Search indexed items by keyword.")
    search.add_argument("query", help="Free-text query.")
    search.add_argument(
        "--colors",
        action="store_true",
        help="Attach dominant colors to hits when the query asks about color.",
    )
    search.set_defaults(_handler=_cmd_search)

    recent = subparsers.add_parser("recent", help="List the most recently seen items.")
    recent.add_argument("--limit", type=int, default=20, help="Maximum items to print.")
    recent.set_defaults(_handler=_cmd_recent)

    stats = subparsers.add_parser("stats", help="Print collection counts.")
    stats.set_defaults(_handler=_cmd_stats)

    cleanup = subparsers.add_parser("cleanup", help="Run one retention cycle now.")
    cleanup.set_defaults(_handler=_cmd_cleanup)

    clear = subparsers.add_parser("clear", help="Delete everything in the index.")
    clear.add_argument("--yes", action="store_true", help="Confirm deletion.")
    clear.set_defaults(_handler=_cmd_clear)

    watch = subparsers.add_parser(
        "watch",
        help="Run retention now and then every retention.interval_seconds until stopped.",
    )
    watch.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted).",
    )
    watch.set_defaults(_handler=_cmd_watch, _start_retention=True)

    export = subparsers.add_parser("export", help="Export items and tokens to an Excel workbook.")
    export.add_argument("--out", required=True, help="Output .xlsx path.")
    export.set_defaults(_handler=_cmd_export)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, sort_keys=True))


def _item_json(item: Item) -> dict[str, Any]:
    return dataclasses.asdict(item)


def _log_path(args: argparse.Namespace) -> Path:
    if args.log:
        return Path(args.log)
    if args.db and args.db != ":memory:":
        return Path(args.db).parent / DEFAULT_LOG_NAME
    return Path(DEFAULT_LOG_NAME)


def _build_analyzer(cfg: AppConfig) -> VisionAnalyzer | None:
    api_key = resolve_vision_api_key(cfg)
    if api_key is None:
        return None
    return OpenAIVisionAnalyzer(api_key, vision_cfg=cfg.vision)


async def _run_with_indexer(
    command: _Command,
    args: argparse.Namespace,
    cfg: AppConfig,
    db_path: str,
    log: RunLogger,
) -> int:
    analyzer = _build_analyzer(cfg)
    async with Indexer(
        SQLiteStore(db_path),
        cfg,
        analyzer=analyzer,
        logger=log,
        start_retention=bool(getattr(args, "_start_retention", False)),
    ) as indexer:
        return await command(indexer, args)


def _dispatch(command: _Command, args: argparse.Namespace) -> int:
    log_path = _log_path(args)
    with RunLogger.open(log_path) as log:
        log.info(
            "command_started",
            command=args.command,
            config_path=str(args.config) if args.config else None,
            db_path=args.db,
        )

        try:
            cfg = load_config(args.config)
            db_path = args.db or cfg.storage.db_path

            log.info(
                "config_loaded",
                config_sha256=config_sha256(cfg),
                db_path=db_path,
                vision_enabled=cfg.vision.enabled,
            )

            code = asyncio.run(_run_with_indexer(command, args, cfg, db_path, log))
            log.info("command_completed", command=args.command, exit_code=code)
            return code
        except Exception as e:
            log.exception("command_failed", exc=e, command=args.command)
            raise


async def _cmd_ingest(indexer: Indexer, args: argparse.Namespace) -> int:
    path = Path(args.items)
    if not path.exists():
        raise ValidationError(f"Items file not found: {path}")

    counts = {"indexed": 0, "already_indexed": 0, "invalid_payload": 0, "store_error": 0}
    with path.open("r", encoding="utf-8") as fp:
        for line_no, line in enumerate(fp, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as e:
                counts["invalid_payload"] += 1
                _eprint(f"line {line_no}: invalid JSON: {e}")
                continue
            if not isinstance(payload, dict):
                counts["invalid_payload"] += 1
                _eprint(f"line {line_no}: item payload must be a JSON object")
                continue

            result = await indexer.ingest_item(payload)
            counts[result.status] = counts.get(result.status, 0) + 1
            if not result.ok:
                _eprint(f"line {line_no}: {result.status}: {result.error}")

    for status, n in counts.items():
        print(f"{status}={n}")

    return 3 if counts["store_error"] else 0


async def _cmd_add_snapshot(indexer: Indexer, args: argparse.Namespace) -> int:
    path = Path(args.image)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ValidationError(f"Failed to read image file: {path}: {e}") from e

    captured_at = args.captured_at if args.captured_at is not None else now_ms()
    result = await indexer.ingest_snapshot(
        {
            "itemId": args.item_id,
            "capturedAt": captured_at,
            "imageBytes": encode_image_frame(raw),
        }
    )

    print(f"status={result.status}")
    if result.key:
        print(f"key={result.key}")
    if not result.ok:
        _eprint(str(result.error))
        return 3
    return 0


async def _cmd_search(indexer: Indexer, args: argparse.Namespace) -> int:
    if args.colors:
        hits = await indexer.search_with_colors(args.query)
        print(f"hits={len(hits)}")
        for hit in hits:
            obj = _item_json(hit.item)
            obj["colors"] = [dataclasses.asdict(c) for c in hit.colors]
            _print_json(obj)
        return 0

    items = await indexer.search(args.query)
    print(f"hits={len(items)}")
    for item in items:
        _print_json(_item_json(item))
    return 0


async def _cmd_recent(indexer: Indexer, args: argparse.Namespace) -> int:
    for item in await indexer.recent_items(args.limit):
        _print_json(_item_json(item))
    return 0


async def _cmd_stats(indexer: Indexer, args: argparse.Namespace) -> int:
    stats = await indexer.stats()
    print(f"items={stats.items}")
    print(f"snapshots={stats.snapshots}")
    print(f"thumbnails={stats.thumbnails}")
    print(f"schema_version={await indexer.store.schema_version()}")
    return 0


async def _cmd_cleanup(indexer: Indexer, args: argparse.Namespace) -> int:
    report = await indexer.run_retention()
    for key, value in dataclasses.asdict(report).items():
        print(f"{key}={value}")
    return 0


async def _cmd_clear(indexer: Indexer, args: argparse.Namespace) -> int:
    if not args.yes:
        _eprint("Refusing to clear the index without --yes")
        return 2
    await indexer.clear_all()
    print("cleared=true")
    return 0


async def _cmd_watch(indexer: Indexer, args: argparse.Namespace) -> int:
    scheduler = indexer.scheduler
    assert scheduler is not None
    print(f"interval_seconds={scheduler.interval_seconds:g}", flush=True)

    if args.duration is None:
        await asyncio.Event().wait()
    else:
        await asyncio.sleep(max(0.0, float(args.duration)))

    print(f"cycles={scheduler.cycles}")
    return 0


async def _cmd_export(indexer: Indexer, args: argparse.Namespace) -> int:
    out = await export_index_workbook(indexer.store, args.out)
    print(f"workbook={out}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(_dispatch(handler, args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (StorageError, ExportError, ValidationError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
