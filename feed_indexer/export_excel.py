from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .errors import ExportError
from .storage import SQLiteStore

_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).isoformat()


def _safe_excel_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    s = value
    if not s:
        return s
    if s.startswith(_EXCEL_FORMULA_PREFIXES):
        return "'" + s
    return s


def _fmt_space_join(values: Iterable[str]) -> str:
    out: list[str] = []
    for v in values:
        t = (v or "").strip()
        if t:
            out.append(t)
    return " ".join(out)


async def export_index_workbook(store: SQLiteStore, out_path: str | Path) -> Path:
    """
    Write the indexed items, token posting sizes and collection counts to .xlsx.

    Sheets: items (newest first), tokens (largest posting first), stats.
    """
    try:
        import pandas as pd  # type: ignore[import-not-found]
    except Exception as e:
        raise ExportError("pandas is required for Excel export") from e

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    item_rows: list[dict[str, Any]] = []
    async for item in store.items.iterate_ordered_by_field("first_seen_at", "desc"):
        item_rows.append(
            {
                "id": _safe_excel_text(item.id),
                "url": _safe_excel_text(item.url),
                "author": _safe_excel_text(item.author),
                "caption": _safe_excel_text(item.caption),
                "hashtags": _safe_excel_text(_fmt_space_join(item.hashtags)),
                "first_seen_at": _ms_to_iso(item.first_seen_at),
            }
        )

    token_rows: list[dict[str, Any]] = []
    async for posting in store.postings.scan():
        token_rows.append(
            {"token": _safe_excel_text(posting.token), "items": len(posting.item_ids)}
        )
    token_rows.sort(key=lambda r: (-int(r["items"]), str(r["token"])))

    stats_rows: list[dict[str, Any]] = [
        {"key": "exported_at_utc", "value": _safe_excel_text(_utc_now_iso())},
        {"key": "sqlite_schema_version", "value": int(await store.schema_version())},
        {"key": "counts.items", "value": int(await store.items.count())},
        {"key": "counts.snapshots", "value": int(await store.snapshots.count())},
        {"key": "counts.thumbnails", "value": int(await store.thumbnails.count())},
        {"key": "counts.tokens", "value": len(token_rows)},
        {"key": "output_path", "value": _safe_excel_text(str(out))},
    ]

    df_items = pd.DataFrame(
        item_rows, columns=["id", "url", "author", "caption", "hashtags", "first_seen_at"]
    )
    df_tokens = pd.DataFrame(token_rows, columns=["token", "items"])
    df_stats = pd.DataFrame(stats_rows, columns=["key", "value"])

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            df_items.to_excel(writer, sheet_name="items", index=False)
            df_tokens.to_excel(writer, sheet_name="tokens", index=False)
            df_stats.to_excel(writer, sheet_name="stats", index=False)

            wb = writer.book
            for name in ("items", "tokens", "stats"):
                if name in wb.sheetnames:
                    wb[name].freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out
