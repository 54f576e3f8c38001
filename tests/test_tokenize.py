# tests/test_tokenize.py
from __future__ import annotations

import unittest

from feed_indexer.records import Item, SnapshotAnalysis
from feed_indexer.tokenize import normalize_text, tokenize, tokens_for_analysis, tokens_for_item


class TestTokenize(unittest.TestCase):
    def test_folds_vietnamese_diacritics(self) -> None:
        self.assertEqual(tokenize("Áo Đỏ đẹp quá"), {"ao", "do", "dep", "qua"})

    def test_accented_and_plain_spellings_match(self) -> None:
        self.assertEqual(tokenize("cà phê sữa đá"), tokenize("ca phe sua da"))
        self.assertEqual(tokenize("Café"), {"cafe"})

    def test_drops_single_character_tokens(self) -> None:
        self.assertEqual(tokenize("a b cd ê"), {"cd"})

    def test_empty_and_none(self) -> None:
        self.assertEqual(tokenize(None), set())
        self.assertEqual(tokenize(""), set())
        self.assertEqual(tokenize("   \n\t "), set())

    def test_splits_on_any_whitespace_and_dedupes(self) -> None:
        self.assertEqual(tokenize("dance\tDANCE\nDance  cover"), {"dance", "cover"})

    def test_keeps_hashtag_marker(self) -> None:
        self.assertEqual(tokenize("#Dance #dance fun"), {"#dance", "fun"})

    def test_is_idempotent(self) -> None:
        text = "Hôm nay trời đẹp, đi chơi Đà Lạt!"
        once = tokenize(text)
        self.assertEqual(tokenize(" ".join(sorted(once))), once)

    def test_normalize_text_keeps_whitespace(self) -> None:
        self.assertEqual(normalize_text("Ấm  Áp"), "am  ap")


class TestIngestionTokens(unittest.TestCase):
    def test_item_tokens_cover_caption_hashtags_and_author(self) -> None:
        item = Item(
            id="1",
            url="https://example.com/video/1",
            author="chef_an",
            caption="Phở bò",
            hashtags=("#food", "#hanoi"),
            first_seen_at=0,
        )
        self.assertEqual(tokens_for_item(item), {"pho", "bo", "#food", "#hanoi", "chef_an"})

    def test_analysis_tokens_cover_text_labels_and_objects(self) -> None:
        analysis = SnapshotAnalysis(labels=("Street food",), text="GIẢM GIÁ", objects=("bowl",))
        self.assertEqual(
            tokens_for_analysis(analysis), {"street", "food", "giam", "gia", "bowl"}
        )


if __name__ == "__main__":
    unittest.main()
