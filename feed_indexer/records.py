from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class Item:
    """One observed media object and the text it was indexed under."""

    id: str
    url: str
    author: str = ""
    caption: str = ""
    hashtags: Sequence[str] = ()
    first_seen_at: int = 0


@dataclass(frozen=True)
class SnapshotAnalysis:
    labels: Sequence[str] = ()
    text: str = ""
    objects: Sequence[str] = ()


@dataclass(frozen=True)
class Snapshot:
    key: str
    item_id: str
    captured_at: int
    image_bytes: bytes
    analysis: SnapshotAnalysis | None = None


@dataclass(frozen=True)
class Thumbnail:
    key: str
    item_id: str
    url: str
    captured_at: int
    data_uri: str
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class Posting:
    """A token and the ids of every item indexed under it, in insertion order."""

    token: str
    item_ids: Sequence[str] = ()


def record_key(item_id: str, timestamp: int) -> str:
    return f"{item_id}:{int(timestamp)}"
