"""Promotion of finished recording segments out of the staging directory."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from .event_log import CaptureEventLog

logger = logging.getLogger(__name__)

DEFAULT_NAME_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(slots=True)
class RotationResult:
    """Outcome of a single reconciliation pass."""

    promoted: Path | None = None
    deleted: list[Path] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.promoted is not None or bool(self.deleted)


def _creation_time(path: Path) -> float:
    stat = path.stat()
    birth = getattr(stat, "st_birthtime", None)
    return float(birth) if birth is not None else float(stat.st_mtime)


class SegmentRotator:
    """Move completed segments from ``staging_dir`` into ``output_dir``.

    The engine writes one segment at a time, so the newest staging file is
    always considered in progress. Each pass promotes the segment created just
    before it and deletes anything older, leaving exactly one file behind.
    """

    def __init__(
        self,
        staging_dir: Path | str,
        output_dir: Path | str,
        *,
        interval_s: float = 1.0,
        name_format: str = DEFAULT_NAME_FORMAT,
        clock: Callable[[], datetime] = datetime.now,
        on_promoted: Callable[[Path], None] | None = None,
        event_log: CaptureEventLog | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._staging_dir = Path(staging_dir)
        self._output_dir = Path(output_dir)
        self._interval = float(interval_s)
        self._name_format = name_format
        self._clock = clock
        self._on_promoted = on_promoted
        self._event_log = event_log
        self._busy = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._promoted: list[Path] = []

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def promoted(self) -> list[Path]:
        return list(self._promoted)

    # ------------------------------ control ----------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="SegmentRotator", daemon=True)
        self._thread.start()

    def stop(self, *, timeout: float = 1.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=timeout)

    def rotate_once(self) -> RotationResult | None:
        """Run one reconciliation pass; ``None`` when a pass is already running."""

        if not self._busy.acquire(blocking=False):
            logger.debug("Skipping rotation tick; previous pass still running")
            return None
        try:
            return self._rotate()
        finally:
            self._busy.release()

    def promote_remaining(self) -> list[Path]:
        """Promote every staging file, oldest first.

        Only valid once the engine has stopped writing.
        """

        with self._busy:
            promoted: list[Path] = []
            for segment in self._segments():
                destination = self._promote(segment)
                if destination is not None:
                    promoted.append(destination)
            return promoted

    # ----------------------------- implementation ----------------------
    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.rotate_once()
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Segment rotation pass failed")

    def _segments(self) -> list[Path]:
        try:
            entries = [path for path in self._staging_dir.iterdir() if path.is_file()]
        except FileNotFoundError:
            return []
        keyed: list[tuple[float, str, Path]] = []
        for path in entries:
            try:
                keyed.append((_creation_time(path), path.name, path))
            except FileNotFoundError:
                continue
        keyed.sort()
        return [path for _, _, path in keyed]

    def _rotate(self) -> RotationResult:
        result = RotationResult()
        segments = self._segments()
        if len(segments) < 2:
            return result
        result.promoted = self._promote(segments[-2])

        remaining = self._segments()
        if len(remaining) < 2:
            return result
        for stale in remaining[:-1]:
            try:
                stale.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Unable to delete stale segment %s: %s", stale, exc)
                continue
            logger.debug("Deleted stale segment %s", stale)
            result.deleted.append(stale)
        return result

    def _destination_for(self, segment: Path) -> Path:
        stamp = self._clock().strftime(self._name_format)
        candidate = self._output_dir / f"{stamp}{segment.suffix}"
        counter = 1
        while candidate.exists():
            candidate = self._output_dir / f"{stamp}-{counter}{segment.suffix}"
            counter += 1
        return candidate

    def _promote(self, segment: Path) -> Path | None:
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            destination = self._destination_for(segment)
            segment.replace(destination)
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unable to promote segment %s: %s", segment, exc)
            return None
        logger.info("Promoted segment %s to %s", segment.name, destination)
        self._promoted.append(destination)
        if self._event_log is not None:
            self._event_log.record(
                "capture",
                "promoted",
                f"Segment {segment.name} promoted",
                metadata={"destination": str(destination)},
            )
        if self._on_promoted is not None:
            try:
                self._on_promoted(destination)
            except Exception:
                logger.exception("on_promoted callback raised")
        return destination


__all__ = ["RotationResult", "SegmentRotator"]
