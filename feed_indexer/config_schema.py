from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    db_path: str = "feed_index.sqlite"

    @field_validator("db_path")
    @classmethod
    def _db_path_must_be_set(cls, v: str) -> str:
        path = (v or "").strip()
        if not path:
            raise ValueError("must be a non-empty path")
        return path


class RetentionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    horizon_days: PositiveInt = 30
    interval_seconds: PositiveInt = 3600
    max_snapshots: PositiveInt = 10000
    enforce_snapshot_cap: bool = True


class ThumbnailConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_per_item: PositiveInt = 500


class ColorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    num_colors: int = Field(3, ge=1, le=16)
    max_sample_size: PositiveInt = 200
    max_items: PositiveInt = 20  # search hits enriched per color query


class VisionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = False
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4.1-mini"
    max_output_tokens: PositiveInt = 400

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("model")
    @classmethod
    def _model_must_be_set(cls, v: str) -> str:
        model = (v or "").strip()
        if not model:
            raise ValueError("must be non-empty")
        return model


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    storage: StorageConfig = Field(default_factory=StorageConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    thumbnails: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    colors: ColorConfig = Field(default_factory=ColorConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
