from __future__ import annotations

import time
from typing import Any, Mapping

from .dedupe import derive_item_id
from .errors import ValidationError
from .records import Item, Snapshot, Thumbnail, record_key

FRAME_HEADER_BYTES = 4
_MAX_FRAME_LENGTH = 2**32 - 1


def _now_ms() -> int:
    return int(time.time() * 1000)


def _first(item: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in item and item[k] is not None:
            return item[k]
    return None


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int):
        return str(value)
    return None


def _coerce_timestamp(value: Any, *, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, int):
        ts = value
    elif isinstance(value, float) and value.is_integer():
        ts = int(value)
    else:
        raise ValidationError(f"{field} must be an integer timestamp in milliseconds")
    if ts < 0:
        raise ValidationError(f"{field} must be >= 0")
    return ts


def _coerce_dimension(value: Any, *, field: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    return value


def _coerce_hashtags(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        raw = value.split()
    elif isinstance(value, (list, tuple, set, frozenset)):
        raw = [v for v in value if isinstance(v, str)]
    else:
        raise ValidationError("hashtags must be a list of strings")

    out: list[str] = []
    seen: set[str] = set()
    for item in raw:
        term = (item or "").strip()
        if not term:
            continue
        key = term.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(term)
    return tuple(out)


def encode_image_frame(raw: bytes) -> bytes:
    """Wrap raw image bytes in the canonical wire form: 4-byte big-endian length, then data."""
    data = bytes(raw)
    if not data:
        raise ValidationError("image bytes must be non-empty")
    if len(data) > _MAX_FRAME_LENGTH:
        raise ValidationError("image bytes exceed the frame size limit")
    return len(data).to_bytes(FRAME_HEADER_BYTES, "big") + data


def decode_image_frame(value: Any) -> bytes:
    """
    Validate and unwrap a length-prefixed image frame.

    This is the only accepted representation of snapshot image bytes; lists of
    numbers, strings and frames whose header disagrees with the payload length
    are rejected.
    """
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValidationError(
            f"invalid payload: image bytes must be a length-prefixed binary frame, got {type(value).__name__}"
        )

    frame = bytes(value)
    if len(frame) <= FRAME_HEADER_BYTES:
        raise ValidationError("invalid payload: image frame is truncated")

    declared = int.from_bytes(frame[:FRAME_HEADER_BYTES], "big")
    body = frame[FRAME_HEADER_BYTES:]
    if declared != len(body):
        raise ValidationError(
            f"invalid payload: frame declares {declared} bytes but carries {len(body)}"
        )
    return body


def item_from_payload(payload: Mapping[str, Any], *, now_ms: int | None = None) -> Item:
    """
    Build an Item from a scraper payload.

    Accepts camelCase or snake_case keys. `id` may be omitted when it can be
    derived from the URL or from author plus first-seen time.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("item payload must be a mapping")

    url = _coerce_str(_first(payload, "url"))
    if not url:
        raise ValidationError("item url must be a non-empty string")

    author = _coerce_str(_first(payload, "author")) or ""
    caption = _coerce_str(_first(payload, "caption")) or ""
    hashtags = _coerce_hashtags(_first(payload, "hashtags"))

    seen_at = _coerce_timestamp(
        _first(payload, "firstSeenAt", "first_seen_at", "viewedAt"),
        field="firstSeenAt",
    )
    if seen_at is None:
        seen_at = _now_ms() if now_ms is None else int(now_ms)

    item_id = _coerce_id(_first(payload, "id")) or derive_item_id(url, author, seen_at)
    if not item_id:
        raise ValidationError("item id is missing and cannot be derived")

    return Item(
        id=item_id,
        url=url,
        author=author,
        caption=caption,
        hashtags=hashtags,
        first_seen_at=seen_at,
    )


def snapshot_from_payload(payload: Mapping[str, Any]) -> Snapshot:
    if not isinstance(payload, Mapping):
        raise ValidationError("snapshot payload must be a mapping")

    item_id = _coerce_id(_first(payload, "itemId", "item_id"))
    if not item_id:
        raise ValidationError("snapshot itemId must be non-empty")

    captured_at = _coerce_timestamp(
        _first(payload, "capturedAt", "captured_at"), field="capturedAt"
    )
    if captured_at is None:
        raise ValidationError("snapshot capturedAt is required")

    image = decode_image_frame(_first(payload, "imageBytes", "image_bytes"))

    key = _coerce_str(_first(payload, "key")) or record_key(item_id, captured_at)
    return Snapshot(key=key, item_id=item_id, captured_at=captured_at, image_bytes=image)


def thumbnail_from_payload(payload: Mapping[str, Any]) -> Thumbnail:
    if not isinstance(payload, Mapping):
        raise ValidationError("thumbnail payload must be a mapping")

    item_id = _coerce_id(_first(payload, "itemId", "item_id"))
    if not item_id:
        raise ValidationError("thumbnail itemId must be non-empty")

    captured_at = _coerce_timestamp(
        _first(payload, "capturedAt", "captured_at"), field="capturedAt"
    )
    if captured_at is None:
        raise ValidationError("thumbnail capturedAt is required")

    data_uri = _coerce_str(_first(payload, "dataUri", "data_uri"))
    if not data_uri or not data_uri.startswith("data:"):
        raise ValidationError("thumbnail dataUri must be a data: URI")

    key = _coerce_str(_first(payload, "key")) or record_key(item_id, captured_at)
    return Thumbnail(
        key=key,
        item_id=item_id,
        url=_coerce_str(_first(payload, "url")) or "",
        captured_at=captured_at,
        data_uri=data_uri,
        width=_coerce_dimension(_first(payload, "width"), field="width"),
        height=_coerce_dimension(_first(payload, "height"), field="height"),
    )
