# tests/test_normalize.py
from __future__ import annotations

import unittest

from feed_indexer.errors import ValidationError
from feed_indexer.normalize import (
    decode_image_frame,
    encode_image_frame,
    item_from_payload,
    snapshot_from_payload,
    thumbnail_from_payload,
)


class TestImageFrames(unittest.TestCase):
    def test_frame_layout(self) -> None:
        frame = encode_image_frame(b"abc")
        self.assertEqual(frame, b"\x00\x00\x00\x03abc")
        self.assertEqual(decode_image_frame(frame), b"abc")
        self.assertEqual(decode_image_frame(bytearray(frame)), b"abc")

    def test_rejects_other_representations(self) -> None:
        for value in ([1, 2, 3], "abc", {"0": 1}, None, 42):
            with self.assertRaises(ValidationError, msg=repr(value)) as ctx:
                decode_image_frame(value)
            self.assertIn("invalid payload", str(ctx.exception))

    def test_rejects_length_mismatch_and_truncation(self) -> None:
        with self.assertRaises(ValidationError):
            decode_image_frame(b"\x00\x00\x00\x05abc")
        with self.assertRaises(ValidationError):
            decode_image_frame(b"\x00\x00\x00\x01ab")
        with self.assertRaises(ValidationError):
            decode_image_frame(b"\x00\x00")
        with self.assertRaises(ValidationError):
            encode_image_frame(b"")


class TestItemPayload(unittest.TestCase):
    def test_extracts_fields(self) -> None:
        item = item_from_payload(
            {
                "id": "123",
                "url": "https://www.tiktok.com/@user1/video/123",
                "author": "user1",
                "caption": "  áo đỏ đẹp quá ",
                "hashtags": ["#OOTD", "#ootd", "#fashion", ""],
                "firstSeenAt": 1000,
            }
        )
        self.assertEqual(item.id, "123")
        self.assertEqual(item.author, "user1")
        self.assertEqual(item.caption, "áo đỏ đẹp quá")
        self.assertEqual(item.hashtags, ("#OOTD", "#fashion"))
        self.assertEqual(item.first_seen_at, 1000)

    def test_derives_id_from_video_url(self) -> None:
        item = item_from_payload({"url": "https://www.tiktok.com/@a/video/987?lang=vi", "viewedAt": 5})
        self.assertEqual(item.id, "987")

    def test_derives_fallback_id_from_author_and_time(self) -> None:
        item = item_from_payload({"url": "https://vt.tiktok.com/ZSabc/", "author": "bob", "first_seen_at": 42})
        self.assertEqual(item.id, "bob-42")

    def test_defaults_first_seen_to_now(self) -> None:
        item = item_from_payload({"url": "https://x.test/video/1"}, now_ms=777)
        self.assertEqual(item.first_seen_at, 777)

    def test_hashtags_may_be_a_string(self) -> None:
        item = item_from_payload({"url": "https://x.test/video/1", "hashtags": "#a1 #b2 #A1"})
        self.assertEqual(item.hashtags, ("#a1", "#b2"))

    def test_rejects_bad_payloads(self) -> None:
        bad = [
            {},
            {"url": "   "},
            {"url": "https://vt.tiktok.com/short"},
            {"url": "https://x.test/video/1", "firstSeenAt": "yesterday"},
            {"url": "https://x.test/video/1", "firstSeenAt": -1},
            {"url": "https://x.test/video/1", "hashtags": 5},
        ]
        for payload in bad:
            with self.assertRaises(ValidationError, msg=repr(payload)):
                item_from_payload(payload)

    def test_boolean_id_is_not_an_id(self) -> None:
        item = item_from_payload({"id": True, "url": "https://x.test/video/55"})
        self.assertEqual(item.id, "55")


class TestSnapshotAndThumbnailPayloads(unittest.TestCase):
    def test_snapshot_key_is_item_and_time(self) -> None:
        snap = snapshot_from_payload(
            {"itemId": "123", "capturedAt": 1000, "imageBytes": encode_image_frame(b"jpeg")}
        )
        self.assertEqual(snap.key, "123:1000")
        self.assertEqual(snap.image_bytes, b"jpeg")
        self.assertIsNone(snap.analysis)

    def test_snapshot_requires_item_time_and_frame(self) -> None:
        frame = encode_image_frame(b"x")
        for payload in (
            {"capturedAt": 1, "imageBytes": frame},
            {"itemId": "1", "imageBytes": frame},
            {"itemId": "1", "capturedAt": 1, "imageBytes": [1, 2]},
        ):
            with self.assertRaises(ValidationError, msg=repr(payload)):
                snapshot_from_payload(payload)

    def test_thumbnail_fields(self) -> None:
        thumb = thumbnail_from_payload(
            {
                "item_id": 7,
                "captured_at": 9,
                "dataUri": "data:image/jpeg;base64,AAAA",
                "width": 120,
                "height": 200,
            }
        )
        self.assertEqual(thumb.key, "7:9")
        self.assertEqual((thumb.width, thumb.height), (120, 200))

    def test_thumbnail_requires_data_uri(self) -> None:
        with self.assertRaises(ValidationError):
            thumbnail_from_payload({"itemId": "7", "capturedAt": 9, "dataUri": "https://x/y.jpg"})
        with self.assertRaises(ValidationError):
            thumbnail_from_payload(
                {"itemId": "7", "capturedAt": 9, "dataUri": "data:x", "width": -1}
            )


if __name__ == "__main__":
    unittest.main()
