from __future__ import annotations

from .api import AnalyzeResult, IndexStats, Indexer, IngestResult, SearchHit
from .colors import DetectedColor, detect_colors, is_color_query, quantize
from .config import config_sha256, load_config, resolve_vision_api_key
from .config_schema import AppConfig
from .errors import (
    ConfigError,
    ExportError,
    ExternalServiceError,
    StorageError,
    ValidationError,
)
from .index import InvertedIndex
from .records import Item, Snapshot, SnapshotAnalysis, Thumbnail
from .retention import RetentionManager, RetentionScheduler
from .storage import SQLiteStore
from .tokenize import tokenize

__all__ = [
    "AnalyzeResult",
    "AppConfig",
    "ConfigError",
    "DetectedColor",
    "ExportError",
    "ExternalServiceError",
    "IndexStats",
    "Indexer",
    "IngestResult",
    "InvertedIndex",
    "Item",
    "RetentionManager",
    "RetentionScheduler",
    "SQLiteStore",
    "SearchHit",
    "Snapshot",
    "SnapshotAnalysis",
    "StorageError",
    "Thumbnail",
    "ValidationError",
    "config_sha256",
    "detect_colors",
    "is_color_query",
    "load_config",
    "quantize",
    "resolve_vision_api_key",
    "tokenize",
]
