# tests/test_dedupe.py
from __future__ import annotations

import unittest

from feed_indexer.dedupe import canonicalize_url, derive_item_id


class TestDedupe(unittest.TestCase):
    def test_canonicalize_strips_query_and_frag(self) -> None:
        url = "https://www.TikTok.com/@u/video/123/?is_from_webapp=1#c"
        self.assertEqual(canonicalize_url(url), "https://tiktok.com/@u/video/123")

    def test_video_id_wins_over_author(self) -> None:
        self.assertEqual(
            derive_item_id("https://www.tiktok.com/@u/video/7301234567890", "u", 5),
            "7301234567890",
        )

    def test_falls_back_to_author_and_time(self) -> None:
        self.assertEqual(derive_item_id("https://vt.tiktok.com/ZS8abc/", "mai", 1700), "mai-1700")

    def test_none_when_nothing_identifies_the_item(self) -> None:
        self.assertIsNone(derive_item_id("https://vt.tiktok.com/ZS8abc/", "", 1700))
        self.assertIsNone(derive_item_id(None, "mai", None))


if __name__ == "__main__":
    unittest.main()
