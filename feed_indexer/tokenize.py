from __future__ import annotations

import unicodedata
from typing import Iterable

from .records import Item, SnapshotAnalysis

MIN_TOKEN_CHARS = 2

# No canonical decomposition exists for these, so NFD leaves them intact.
_FOLD_TABLE = str.maketrans({"đ": "d", "Đ": "d"})


def _is_combining_mark(ch: str) -> bool:
    # Combining Diacritical Marks block only.
    return 0x0300 <= ord(ch) <= 0x036F


def normalize_text(text: str | None) -> str:
    """Lowercase, fold diacritics to base letters, keep whitespace as-is."""
    if not text:
        return ""

    lowered = text.lower().translate(_FOLD_TABLE)
    decomposed = unicodedata.normalize("NFD", lowered)
    return "".join(ch for ch in decomposed if not _is_combining_mark(ch))


def tokenize(text: str | None) -> set[str]:
    """
    Turn free text into the set of search tokens.

    The same rule must run at ingestion and at query time, otherwise
    accented and unaccented spellings stop matching each other.
    """
    return {tok for tok in normalize_text(text).split() if len(tok) >= MIN_TOKEN_CHARS}


def tokenize_many(parts: Iterable[str | None]) -> set[str]:
    out: set[str] = set()
    for part in parts:
        out |= tokenize(part)
    return out


def tokens_for_item(item: Item) -> set[str]:
    return tokenize(" ".join([item.caption or "", *item.hashtags, item.author or ""]))


def tokens_for_analysis(analysis: SnapshotAnalysis) -> set[str]:
    return tokenize_many([analysis.text, *analysis.labels, *analysis.objects])
