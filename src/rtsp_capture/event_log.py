"""Bounded journal of capture lifecycle events."""

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
    """One lifecycle transition of a supervised engine process."""

    timestamp: float
    kind: str
    event: str
    message: str
    pid: int | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "event": self.event,
            "message": self.message,
        }
        if self.pid is not None:
            payload["pid"] = self.pid
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "CaptureEvent | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        kind = payload.get("kind")
        try:
            timestamp = float(payload.get("timestamp", 0.0))
        except (TypeError, ValueError):
            timestamp = 0.0
        pid = payload.get("pid")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            kind=kind if isinstance(kind, str) and kind else "capture",
            event=event,
            message=message,
            pid=pid if isinstance(pid, int) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class CaptureEventLog:
    """Thread-safe event journal with optional JSON-lines persistence.

    Supervisors record from their worker threads, so every mutation happens
    under a lock. Persistence failures are logged and otherwise ignored; the
    in-memory tail stays authoritative.
    """

    def __init__(
        self,
        path: Path | str | None = None,
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
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        kind: str,
        event: str,
        message: str,
        *,
        pid: int | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> CaptureEvent:
        """Append an event and return the stored entry."""

        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = CaptureEvent(
            timestamp=time.time(),
            kind=kind,
            event=event,
            message=message,
            pid=pid,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._persist(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        kind: str | None = None,
        pid: int | None = None,
    ) -> list[CaptureEvent]:
        """Return the most recent events, optionally filtered."""

        with self._lock:
            entries: Iterable[CaptureEvent] = list(self._entries)
        if kind:
            entries = [entry for entry in entries if entry.kind == kind]
        if pid is not None:
            entries = [entry for entry in entries if entry.pid == pid]
        entries = list(entries)
        if limit is not None and limit > 0 and len(entries) > limit:
            entries = entries[-limit:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = CaptureEvent.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)

    def _persist(self, entry: CaptureEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["CaptureEvent", "CaptureEventLog"]
