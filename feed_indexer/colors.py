from __future__ import annotations

import math
import unicodedata
from dataclasses import dataclass
from io import BytesIO
from operator import itemgetter
from typing import Sequence

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError

Pixel = tuple[int, int, int]

DEFAULT_SAMPLE_SIZE = 200

# Lowercased substring triggers; matching any of them makes a query color-relevant.
COLOR_QUERY_TERMS: tuple[str, ...] = (
    "màu",
    "màu gì",
    "áo màu",
    "color",
    "colour",
    "what color",
    "áo",
    "quần",
    "shirt",
    "pants",
)


@dataclass(frozen=True)
class NamedColor:
    name: str
    label_vi: str
    references: tuple[str, ...]


# Iteration order breaks distance ties: the first entry listed wins.
COLOR_LEXICON: tuple[NamedColor, ...] = (
    NamedColor("red", "đỏ", ("#FF0000", "#DC143C", "#B22222", "#8B0000", "#FF6347", "#FF4500")),
    NamedColor("pink", "hồng", ("#FFC0CB", "#FF69B4", "#FF1493", "#FFB6C1", "#FFA07A")),
    NamedColor("orange", "cam", ("#FFA500", "#FF8C00", "#FF7F50")),
    NamedColor("yellow", "vàng", ("#FFFF00", "#FFD700", "#FFE135")),
    NamedColor("light yellow", "vàng nhạt", ("#FFFFE0", "#FFFACD", "#FFEFD5")),
    NamedColor("green", "xanh lá", ("#00FF00", "#32CD32", "#228B22", "#008000", "#00FF7F", "#00FA9A")),
    NamedColor(
        "blue",
        "xanh dương",
        ("#0000FF", "#4169E1", "#1E90FF", "#0000CD", "#0066CC", "#00CED1", "#00BFFF"),
    ),
    NamedColor("sky blue", "xanh da trời", ("#87CEEB", "#87CEFA", "#B0E0E6", "#ADD8E6")),
    NamedColor("purple", "tím", ("#800080", "#9370DB", "#8B008B", "#9400D3", "#9932CC", "#BA55D3")),
    NamedColor("brown", "nâu", ("#A52A2A", "#8B4513", "#654321", "#D2691E", "#CD853F")),
    NamedColor("black", "đen", ("#000000", "#1C1C1C", "#2F2F2F", "#3D3D3D")),
    NamedColor("white", "trắng", ("#FFFFFF", "#F5F5F5", "#FAFAFA", "#F0F0F0")),
    NamedColor("gray", "xám", ("#808080", "#A9A9A9", "#C0C0C0", "#D3D3D3", "#696969")),
    NamedColor("beige", "be", ("#F5F5DC", "#F5DEB3", "#DEB887")),
    NamedColor("cream", "kem", ("#FFF8DC", "#FFE4B5", "#FFEBCD")),
)


def hex_to_rgb(value: str) -> Pixel:
    h = (value or "").strip().lstrip("#")
    if len(h) != 6:
        raise ValueError(f"not a #RRGGBB color: {value!r}")
    return int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)


def rgb_to_hex(r: int, g: int, b: int) -> str:
    return "#" + "".join(f"{int(c):02x}" for c in (r, g, b))


_REFERENCES: tuple[tuple[Pixel, NamedColor], ...] = tuple(
    (hex_to_rgb(ref), entry) for entry in COLOR_LEXICON for ref in entry.references
)


@dataclass(frozen=True)
class PaletteColor:
    r: int
    g: int
    b: int
    count: int

    @property
    def rgb(self) -> Pixel:
        return self.r, self.g, self.b

    @property
    def hex(self) -> str:
        return rgb_to_hex(self.r, self.g, self.b)


@dataclass(frozen=True)
class DetectedColor:
    name: str
    label_vi: str
    hex: str
    rgb: Pixel
    confidence: float


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _split_bucket(bucket: list[Pixel]) -> tuple[list[Pixel], list[Pixel]] | None:
    ranges = [
        max(p[ch] for p in bucket) - min(p[ch] for p in bucket) for ch in range(3)
    ]
    widest = max(ranges)
    if widest == 0:
        return None

    channel = 0
    if ranges[1] == widest:
        channel = 1
    elif ranges[2] == widest:
        channel = 2

    ordered = sorted(bucket, key=itemgetter(channel))
    n = len(ordered)
    median = n // 2

    # Move the cut to an edge of the run of equal values around the median.
    value = ordered[median][channel]
    lo = median
    while lo > 0 and ordered[lo - 1][channel] == value:
        lo -= 1
    hi = median
    while hi < n and ordered[hi][channel] == value:
        hi += 1

    candidates = [edge for edge in (lo, hi) if 0 < edge < n]
    cut = min(candidates, key=lambda edge: abs(edge - median))
    return ordered[:cut], ordered[cut:]


def quantize(pixels: Sequence[Sequence[int]], num_colors: int) -> list[PaletteColor]:
    """
    Median-cut a pixel sample down to at most num_colors dominant colors.

    Buckets are split along their widest channel until the requested count is
    reached or nothing is left to split. The result is ordered by pixel count,
    most dominant first, and the counts always sum to len(pixels).
    """
    if num_colors < 1:
        raise ValueError("num_colors must be >= 1")

    pool: list[Pixel] = [(int(p[0]), int(p[1]), int(p[2])) for p in pixels]
    if not pool:
        return []

    buckets: list[list[Pixel]] = [pool]
    while len(buckets) < num_colors and len(buckets) < len(pool):
        next_buckets: list[list[Pixel]] = []
        split_any = False
        for i, bucket in enumerate(buckets):
            if len(next_buckets) + (len(buckets) - i) >= num_colors:
                next_buckets.append(bucket)
                continue
            halves = _split_bucket(bucket)
            if halves is None:
                next_buckets.append(bucket)
                continue
            next_buckets.extend(halves)
            split_any = True
        buckets = next_buckets
        if not split_any:
            break

    colors: list[PaletteColor] = []
    for bucket in buckets:
        count = len(bucket)
        colors.append(
            PaletteColor(
                r=_round_half_up(sum(p[0] for p in bucket) / count),
                g=_round_half_up(sum(p[1] for p in bucket) / count),
                b=_round_half_up(sum(p[2] for p in bucket) / count),
                count=count,
            )
        )

    colors.sort(key=lambda c: -c.count)
    return colors


def nearest_named_color(rgb: Sequence[int]) -> NamedColor:
    r, g, b = int(rgb[0]), int(rgb[1]), int(rgb[2])
    best: NamedColor | None = None
    best_distance = math.inf
    for (rr, rg, rb), entry in _REFERENCES:
        distance = math.sqrt((r - rr) ** 2 + (g - rg) ** 2 + (b - rb) ** 2)
        if distance < best_distance:
            best_distance = distance
            best = entry
    assert best is not None
    return best


def nearest_color_name(rgb: Sequence[int]) -> str:
    return nearest_named_color(rgb).name


def describe_palette(palette: Sequence[PaletteColor], total: int) -> list[DetectedColor]:
    out: list[DetectedColor] = []
    for color in palette:
        entry = nearest_named_color(color.rgb)
        confidence = min(color.count / total, 1.0) if total > 0 else 0.0
        out.append(
            DetectedColor(
                name=entry.name,
                label_vi=entry.label_vi,
                hex=color.hex,
                rgb=color.rgb,
                confidence=confidence,
            )
        )
    return out


def is_color_query(query: str | None) -> bool:
    # Terms are NFC; some input methods send decomposed text.
    lowered = unicodedata.normalize("NFC", query or "").lower()
    return any(term in lowered for term in COLOR_QUERY_TERMS)


def extract_pixels(image_bytes: bytes, *, max_size: int = DEFAULT_SAMPLE_SIZE) -> list[Pixel]:
    """
    Decode an image and sample its RGB pixels.

    The image is downsampled so its longer side is at most max_size, which
    bounds the cost of quantization.
    """
    if max_size < 1:
        raise ValueError("max_size must be >= 1")
    if not image_bytes:
        raise ValidationError("image is empty")

    try:
        with Image.open(BytesIO(image_bytes)) as img:
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"image could not be decoded: {e}") from e

    rgb.thumbnail((max_size, max_size))
    data = rgb.tobytes()
    return [(data[i], data[i + 1], data[i + 2]) for i in range(0, len(data), 3)]


def detect_colors(
    image_bytes: bytes,
    num_colors: int = 5,
    *,
    max_size: int = DEFAULT_SAMPLE_SIZE,
) -> list[DetectedColor]:
    pixels = extract_pixels(image_bytes, max_size=max_size)
    return describe_palette(quantize(pixels, num_colors), len(pixels))
