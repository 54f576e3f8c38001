from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


def load_config(path: str | Path | None) -> AppConfig:
    """
    Load a YAML config file and validate it into a typed AppConfig.

    A missing path (None) yields the defaults. Raises ConfigError with a
    readable validation message on failure.
    """
    if path is None:
        return AppConfig()

    p = Path(path)

    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except Exception as e:  # PyYAML can raise multiple exception types
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def resolve_vision_api_key(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> str | None:
    """
    Return the vision API key, or None when vision analysis is disabled.

    Enabling vision without exporting the key is a configuration error.
    """
    if not config.vision.enabled:
        return None

    env = os.environ if environ is None else environ
    name = config.vision.api_key_env

    key = (env.get(name) or "").strip()
    if not key:
        raise ConfigError(f"Missing required environment variable: {name}")
    return key


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values for the run log.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines: list[str] = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
