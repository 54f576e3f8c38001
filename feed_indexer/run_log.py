from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

_MESSAGE_LIMIT = 2000
_TRACEBACK_LIMIT = 12000


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def describe_exception(exc: BaseException) -> dict[str, str]:
    """Type, message and formatted traceback of exc, clipped for one log line."""
    formatted = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "type": type(exc).__name__,
        "message": _clip(str(exc), _MESSAGE_LIMIT),
        "traceback": _clip(formatted, _TRACEBACK_LIMIT),
    }


class _EventSink:
    """Level helpers shared by every logger; subclasses implement `emit`."""

    def emit(
        self,
        level: str,
        event: str,
        *,
        item_id: str | None = None,
        error: dict[str, str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        raise NotImplementedError

    def log(self, level: str, event: str, *, item_id: str | None = None, **data: Any) -> None:
        self.emit(level, event, item_id=item_id, data=data)

    def info(self, event: str, *, item_id: str | None = None, **data: Any) -> None:
        self.emit("INFO", event, item_id=item_id, data=data)

    def warning(self, event: str, *, item_id: str | None = None, **data: Any) -> None:
        self.emit("WARN", event, item_id=item_id, data=data)

    def error(self, event: str, *, item_id: str | None = None, **data: Any) -> None:
        self.emit("ERROR", event, item_id=item_id, data=data)

    def exception(
        self,
        event: str,
        *,
        exc: BaseException,
        item_id: str | None = None,
        **data: Any,
    ) -> None:
        self.emit("ERROR", event, item_id=item_id, error=describe_exception(exc), data=data)

    def close(self) -> None:
        pass


class RunLogger(_EventSink):
    """
    Append-only JSONL event log for the indexer process.

    Every line is one object with `ts`, `level`, `event` and `session_id`;
    `item_id`, `error` and `data` appear only when set. Ingestion and
    retention history can then be grepped or loaded into a dataframe.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> None:
        self._path = Path(path)
        self._mode = "w" if overwrite else "a"
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._fp: TextIO | None = None
        self._lock = Lock()

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> "RunLogger":
        logger = cls(path, overwrite=overwrite, session_id=session_id)
        logger._file()
        return logger

    @property
    def path(self) -> Path:
        return self._path

    @property
    def session_id(self) -> str:
        return self._session_id

    def __enter__(self) -> "RunLogger":
        self._file()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            fp, self._fp = self._fp, None
        if fp is not None:
            try:
                fp.flush()
            finally:
                fp.close()

    def emit(
        self,
        level: str,
        event: str,
        *,
        item_id: str | None = None,
        error: dict[str, str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        iid = (item_id or "").strip()
        if iid:
            record["item_id"] = iid
        if error:
            record["error"] = error
        if data:
            record["data"] = data

        line = json.dumps(record, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
        with self._lock:
            fp = self._open_locked()
            fp.write(line + "\n")
            fp.flush()

    def _file(self) -> TextIO:
        with self._lock:
            return self._open_locked()

    def _open_locked(self) -> TextIO:
        if self._fp is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fp = self._path.open(self._mode, encoding="utf-8", newline="\n")
            # Reopening after close must not truncate what this logger wrote.
            self._mode = "a"
        return self._fp


class NullLogger(_EventSink):
    """Logger that discards every event."""

    def emit(
        self,
        level: str,
        event: str,
        *,
        item_id: str | None = None,
        error: dict[str, str] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        pass


EventLogger = RunLogger | NullLogger
