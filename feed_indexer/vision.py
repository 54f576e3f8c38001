from __future__ import annotations

import base64
import binascii
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict

from .config_schema import VisionConfig
from .errors import ExternalServiceError
from .records import SnapshotAnalysis

ANALYSIS_SCHEMA_NAME = "feed_indexer_snapshot_analysis"

# Hand-authored to stay within the JSON Schema subset Structured Outputs accepts.
ANALYSIS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "labels": {"type": "array", "items": {"type": "string"}},
        "text": {"type": "string"},
        "objects": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["labels", "text", "objects"],
}

_SYSTEM_INSTRUCTIONS = """\
You describe a single still frame taken from a short social video so it can be found by keyword later.

Return a JSON object that matches the provided schema EXACTLY:
- labels: up to 10 short scene/content labels (e.g. "beach", "dance", "street food").
- text: all legible text in the frame, verbatim, or "" if none.
- objects: up to 10 concrete objects visible (e.g. "shirt", "guitar", "car").

Use the language of any visible text for `text`; use English for labels and objects.
"""

_TEXT_FORMAT: dict[str, Any] = {
    "format": {
        "type": "json_schema",
        "name": ANALYSIS_SCHEMA_NAME,
        "strict": True,
        "schema": ANALYSIS_JSON_SCHEMA,
    }
}


class _ResponsesAPI(Protocol):
    async def create(self, **kwargs: Any) -> Any: ...


class _OpenAIClient(Protocol):
    responses: _ResponsesAPI


class VisionAnalyzer(Protocol):
    async def analyze(self, image_base64: str) -> SnapshotAnalysis: ...


class VisionResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    labels: list[str]
    text: str
    objects: list[str]

    def to_analysis(self) -> SnapshotAnalysis:
        return SnapshotAnalysis(
            labels=tuple(s.strip() for s in self.labels if s.strip()),
            text=self.text.strip(),
            objects=tuple(s.strip() for s in self.objects if s.strip()),
        )


def encode_image_base64(image_bytes: bytes) -> str:
    return base64.b64encode(bytes(image_bytes)).decode("ascii")


def sniff_image_mime(image_bytes: bytes) -> str:
    head = bytes(image_bytes[:12])
    if head.startswith(b"\x89PNG"):
        return "image/png"
    if head.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "image/jpeg"


def _extract_output_text(response: Any) -> str:
    direct = (getattr(response, "output_text", None) or "").strip()
    if direct:
        return direct

    output = getattr(response, "output", None) or []
    for item in output:
        content = getattr(item, "content", None) or []
        for part in content:
            text = getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                return text.strip()

    raise ExternalServiceError("Vision response did not include output text")


class OpenAIVisionAnalyzer:
    """
    One Responses API call per frame, parsed through a strict JSON schema.

    Failures surface as ExternalServiceError and are never retried here.
    """

    def __init__(
        self,
        api_key: str,
        *,
        vision_cfg: VisionConfig,
        client: _OpenAIClient | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key:
            raise ValueError("api_key must be a non-empty string")

        self._cfg = vision_cfg
        # Client-level retries off: a failed analysis just means "no analysis".
        self._client: _OpenAIClient = client or AsyncOpenAI(api_key=key, max_retries=0)

    @property
    def model(self) -> str:
        return self._cfg.model

    async def analyze(self, image_base64: str) -> SnapshotAnalysis:
        data = (image_base64 or "").strip()
        if not data:
            raise ValueError("image_base64 must be non-empty")

        try:
            mime = sniff_image_mime(base64.b64decode(data[:16], validate=False))
        except (binascii.Error, ValueError):
            mime = "image/jpeg"

        try:
            response = await self._client.responses.create(
                model=self._cfg.model,
                instructions=_SYSTEM_INSTRUCTIONS,
                input=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "input_text", "text": "Describe this frame."},
                            {"type": "input_image", "image_url": f"data:{mime};base64,{data}"},
                        ],
                    }
                ],
                text=_TEXT_FORMAT,
                max_output_tokens=self._cfg.max_output_tokens,
            )
        except Exception as e:
            raise ExternalServiceError(f"Vision call failed ({self._cfg.model}): {e}") from e

        raw = _extract_output_text(response)
        try:
            return VisionResult.model_validate_json(raw).to_analysis()
        except Exception as e:
            raise ExternalServiceError(
                f"Failed to parse vision output ({self._cfg.model}): {e}"
            ) from e
