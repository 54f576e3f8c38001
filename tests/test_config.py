from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from feed_indexer.config import config_sha256, load_config, resolve_vision_api_key
from feed_indexer.config_schema import AppConfig, VisionConfig
from feed_indexer.errors import ConfigError


_VALID_YAML = """\
storage:
  db_path: data/feed.sqlite

retention:
  horizon_days: 7
  interval_seconds: 600
  max_snapshots: 50
  enforce_snapshot_cap: false

thumbnails:
  max_per_item: 10

colors:
  num_colors: 5
  max_sample_size: 100
  max_items: 3

vision:
  enabled: true
  api_key_env: FEED_VISION_KEY
  model: gpt-4.1-mini
  max_output_tokens: 300
"""


class TestConfig(unittest.TestCase):
    def test_loads_valid_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yaml"
            p.write_text(_VALID_YAML, encoding="utf-8")

            cfg = load_config(p)
            self.assertEqual(cfg.storage.db_path, "data/feed.sqlite")
            self.assertEqual(cfg.retention.horizon_days, 7)
            self.assertFalse(cfg.retention.enforce_snapshot_cap)
            self.assertEqual(cfg.thumbnails.max_per_item, 10)
            self.assertEqual(cfg.colors.num_colors, 5)
            self.assertTrue(cfg.vision.enabled)
            self.assertEqual(cfg.vision.api_key_env, "FEED_VISION_KEY")

    def test_defaults(self) -> None:
        cfg = load_config(None)
        self.assertEqual(cfg.retention.horizon_days, 30)
        self.assertEqual(cfg.retention.interval_seconds, 3600)
        self.assertEqual(cfg.thumbnails.max_per_item, 500)
        self.assertEqual(cfg.colors.num_colors, 3)
        self.assertEqual(cfg.colors.max_sample_size, 200)
        self.assertFalse(cfg.vision.enabled)

    def test_empty_file_yields_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yaml"
            p.write_text("", encoding="utf-8")
            self.assertEqual(load_config(p), AppConfig())

    def test_rejects_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yaml"
            p.write_text("storage:\n  db_path: x.sqlite\n  unknown: 1\n", encoding="utf-8")
            with self.assertRaises(ConfigError) as ctx:
                load_config(p)
            self.assertIn("storage.unknown", str(ctx.exception))

    def test_rejects_out_of_range_values(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "config.yaml"
            for text in (
                "colors:\n  num_colors: 17\n",
                "colors:\n  num_colors: 0\n",
                "retention:\n  horizon_days: 0\n",
                "vision:\n  api_key_env: 'not valid'\n",
            ):
                p.write_text(text, encoding="utf-8")
                with self.assertRaises(ConfigError, msg=text):
                    load_config(p)

    def test_missing_and_malformed_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(Path(td) / "missing.yaml")

            p = Path(td) / "list.yaml"
            p.write_text("- a\n- b\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(p)

            bad = Path(td) / "bad.yaml"
            bad.write_text("storage: [unclosed\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(bad)

    def test_resolve_vision_api_key(self) -> None:
        disabled = AppConfig()
        self.assertIsNone(resolve_vision_api_key(disabled, environ={}))

        enabled = AppConfig(vision=VisionConfig(enabled=True, api_key_env="FEED_VISION_KEY"))
        with self.assertRaises(ConfigError):
            resolve_vision_api_key(enabled, environ={})
        with self.assertRaises(ConfigError):
            resolve_vision_api_key(enabled, environ={"FEED_VISION_KEY": "   "})
        self.assertEqual(
            resolve_vision_api_key(enabled, environ={"FEED_VISION_KEY": " sk-test "}),
            "sk-test",
        )

    def test_config_hash_is_stable(self) -> None:
        a = AppConfig()
        b = load_config(None)
        self.assertEqual(config_sha256(a), config_sha256(b))
        self.assertNotEqual(
            config_sha256(a), config_sha256(AppConfig(vision=VisionConfig(enabled=True)))
        )


if __name__ == "__main__":
    unittest.main()
