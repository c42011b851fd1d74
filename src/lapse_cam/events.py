"""Persistent record of capture session events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CaptureEvent:
    """A lifecycle event for a capture session or the media engine."""

    timestamp: float
    category: str
    event: str
    message: str
    session: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.session is not None:
            payload["session"] = self.session
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class CaptureEventLog:
    """Append-only JSON lines log with a bounded in-memory tail."""

    def __init__(
        self,
        path: Path | str | None = Path("data/capture_events.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[CaptureEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare capture event directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        session: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> CaptureEvent:
        """Append a new event and return the stored entry."""

        entry = CaptureEvent(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            session=session,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        session: str | None = None,
    ) -> list[CaptureEvent]:
        """Return the newest entries, optionally for a single session."""

        with self._lock:
            entries: Iterable[CaptureEvent] = list(self._entries)
        if session:
            entries = [entry for entry in entries if entry.session == session]
        entries = list(entries)
        if limit is not None:
            limit_value = max(1, int(limit))
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load capture events: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> CaptureEvent | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        session = payload.get("session")
        metadata = payload.get("metadata")
        return CaptureEvent(
            timestamp=timestamp,
            category=category if isinstance(category, str) and category else "general",
            event=event,
            message=message,
            session=session if isinstance(session, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def _append_persistent(self, entry: CaptureEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist capture event: %s", exc)

    @staticmethod
    def _clean_metadata(metadata: dict[str, object | None] | None) -> dict[str, object] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["CaptureEvent", "CaptureEventLog"]
