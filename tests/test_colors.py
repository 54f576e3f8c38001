from __future__ import annotations

import unicodedata
import unittest
from io import BytesIO

from PIL import Image

from feed_indexer.colors import (
    COLOR_LEXICON,
    PaletteColor,
    describe_palette,
    detect_colors,
    extract_pixels,
    hex_to_rgb,
    is_color_query,
    nearest_color_name,
    quantize,
)
from feed_indexer.errors import ValidationError


def _png(width: int, height: int, bands: list[tuple[int, tuple[int, int, int]]]) -> bytes:
    """Horizontal color bands: (row_count, rgb) from the top down."""
    img = Image.new("RGB", (width, height))
    y = 0
    for rows, rgb in bands:
        for yy in range(y, y + rows):
            for x in range(width):
                img.putpixel((x, yy), rgb)
        y += rows
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TestQuantize(unittest.TestCase):
    def test_two_color_image_reports_shares(self) -> None:
        image = _png(10, 10, [(8, (255, 0, 0)), (2, (0, 0, 255))])

        colors = detect_colors(image, 2)

        self.assertEqual([c.name for c in colors], ["red", "blue"])
        self.assertAlmostEqual(colors[0].confidence, 0.8)
        self.assertAlmostEqual(colors[1].confidence, 0.2)
        self.assertEqual(colors[0].hex, "#ff0000")
        self.assertEqual(colors[0].label_vi, "đỏ")

    def test_never_exceeds_requested_count_and_conserves_pixels(self) -> None:
        pixels = [(r, g, b) for r in range(0, 256, 51) for g in range(0, 256, 85) for b in (0, 255)]
        for k in (1, 2, 3, 5, 7):
            palette = quantize(pixels, k)
            self.assertLessEqual(len(palette), k)
            self.assertEqual(sum(c.count for c in palette), len(pixels))
            counts = [c.count for c in palette]
            self.assertEqual(counts, sorted(counts, reverse=True))

    def test_is_deterministic(self) -> None:
        pixels = [((i * 37) % 256, (i * 91) % 256, (i * 13) % 256) for i in range(500)]
        self.assertEqual(quantize(pixels, 4), quantize(list(pixels), 4))

    def test_single_color_stays_one_bucket(self) -> None:
        palette = quantize([(10, 20, 30)] * 50, 3)
        self.assertEqual(palette, [PaletteColor(10, 20, 30, 50)])

    def test_empty_and_invalid_requests(self) -> None:
        self.assertEqual(quantize([], 3), [])
        with self.assertRaises(ValueError):
            quantize([(0, 0, 0)], 0)

    def test_average_rounds_half_up(self) -> None:
        palette = quantize([(0, 0, 0), (1, 1, 1)], 1)
        self.assertEqual(palette[0].rgb, (1, 1, 1))


class TestColorNames(unittest.TestCase):
    def test_nearest_names(self) -> None:
        self.assertEqual(nearest_color_name((250, 5, 5)), "red")
        self.assertEqual(nearest_color_name((0, 0, 0)), "black")
        self.assertEqual(nearest_color_name((255, 255, 255)), "white")
        self.assertEqual(nearest_color_name((128, 128, 128)), "gray")
        self.assertEqual(nearest_color_name((20, 30, 240)), "blue")

    def test_every_reference_names_its_own_entry(self) -> None:
        for entry in COLOR_LEXICON:
            for ref in entry.references:
                self.assertEqual(nearest_color_name(hex_to_rgb(ref)), entry.name, msg=ref)

    def test_describe_palette_handles_zero_total(self) -> None:
        described = describe_palette([PaletteColor(255, 0, 0, 3)], 0)
        self.assertEqual(described[0].confidence, 0.0)

    def test_color_query_detection(self) -> None:
        self.assertTrue(is_color_query("áo màu gì vậy"))
        self.assertTrue(is_color_query("What COLOR is that"))
        self.assertTrue(is_color_query("red shirt"))
        self.assertFalse(is_color_query("dance cover"))
        self.assertFalse(is_color_query(None))

    def test_color_query_accepts_decomposed_text(self) -> None:
        self.assertTrue(is_color_query(unicodedata.normalize("NFD", "áo màu gì")))
        self.assertTrue(is_color_query(unicodedata.normalize("NFD", "QUẦN đỏ")))


class TestExtractPixels(unittest.TestCase):
    def test_downsamples_to_max_size(self) -> None:
        image = _png(400, 100, [(100, (0, 255, 0))])
        pixels = extract_pixels(image, max_size=200)
        self.assertEqual(len(pixels), 200 * 50)
        self.assertEqual(pixels[0], (0, 255, 0))

    def test_rejects_garbage(self) -> None:
        with self.assertRaises(ValidationError):
            extract_pixels(b"")
        with self.assertRaises(ValidationError):
            extract_pixels(b"definitely not an image")


if __name__ == "__main__":
    unittest.main()
