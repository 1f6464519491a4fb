"""Registry of engine processes started by capture operations."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

import psutil

from .event_log import CaptureEventLog

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Families of operations whose processes can be terminated together."""

    CAPTURE = "capture"
    CONVERT = "convert"
    MERGE = "merge"


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    kind: OperationKind
    pid: int
    label: str | None = None
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "pid": self.pid,
            "label": self.label,
            "started_at": self.started_at,
        }


def matches_engine(name: str | None, engine_name: str) -> bool:
    """Return ``True`` when a process name identifies the engine binary."""

    if not name:
        return False
    cleaned = name.strip().lower()
    if cleaned.endswith(".exe"):
        cleaned = cleaned[: -len(".exe")]
    return cleaned == engine_name.strip().lower()


class ProcessRegistry:
    """Per-kind sets of live engine process identifiers.

    Every supervisor adds its process on start and removes it on disposal.
    Lookups go through :mod:`psutil` so that an identifier recycled by the OS
    for an unrelated program is never terminated.
    """

    def __init__(
        self,
        engine_name: str = "ffmpeg",
        *,
        event_log: CaptureEventLog | None = None,
    ) -> None:
        cleaned = engine_name.strip()
        if not cleaned:
            raise ValueError("engine_name must be provided")
        self._engine_name = cleaned
        self._event_log = event_log
        self._records: dict[OperationKind, dict[int, ProcessRecord]] = {
            kind: {} for kind in OperationKind
        }
        self._lock = threading.Lock()

    @property
    def engine_name(self) -> str:
        return self._engine_name

    def add(self, kind: OperationKind | str, pid: int, *, label: str | None = None) -> ProcessRecord:
        record = ProcessRecord(kind=OperationKind(kind), pid=int(pid), label=label)
        with self._lock:
            self._records[record.kind][record.pid] = record
        logger.debug("Registered %s process %s", record.kind.value, record.pid)
        return record

    def remove(self, kind: OperationKind | str, pid: int) -> bool:
        """Drop a record; returns ``False`` when it was already gone."""

        with self._lock:
            removed = self._records[OperationKind(kind)].pop(int(pid), None)
        if removed is not None:
            logger.debug("Unregistered %s process %s", removed.kind.value, removed.pid)
        return removed is not None

    def active(self, kind: OperationKind | str | None = None) -> list[ProcessRecord]:
        with self._lock:
            if kind is None:
                return [record for records in self._records.values() for record in records.values()]
            return list(self._records[OperationKind(kind)].values())

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return any(pid in records for records in self._records.values())

    def resolve(self, pid: int) -> psutil.Process | None:
        """Return the live engine process for ``pid`` or ``None``.

        ``None`` covers identifiers that no longer exist, zombies, processes we
        may not inspect, and identifiers now owned by a different program.
        """

        try:
            process = psutil.Process(pid)
            name = process.name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        if not matches_engine(name, self._engine_name):
            return None
        return process

    def kill_all(self, kind: OperationKind | str) -> list[int]:
        """Terminate every registered engine process of ``kind``.

        Returns the identifiers that were killed. Records whose identifier now
        belongs to another program are discarded; records for processes that
        already exited stay until their supervisor disposes.
        """

        operation = OperationKind(kind)
        with self._lock:
            records = list(self._records[operation].values())
        killed: list[int] = []
        for record in records:
            try:
                process = psutil.Process(record.pid)
                name = process.name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if not matches_engine(name, self._engine_name):
                logger.info(
                    "Dropping %s record %s: identifier reused by %s",
                    operation.value,
                    record.pid,
                    name,
                )
                self.remove(operation, record.pid)
                continue
            try:
                process.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                logger.debug("Unable to kill %s process %s: %s", operation.value, record.pid, exc)
                continue
            logger.info("Killed %s process %s", operation.value, record.pid)
            killed.append(record.pid)
            if self._event_log is not None:
                self._event_log.record(
                    operation.value,
                    "killed",
                    f"Engine process {record.pid} killed",
                    pid=record.pid,
                )
        return killed


__all__ = ["OperationKind", "ProcessRecord", "ProcessRegistry", "matches_engine"]
