"""Capture, recording, conversion and merge operations built on the supervisor."""
from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, ClassVar, Sequence

from .config import (
    DEFAULT_IMAGE_TIMEOUT_MS,
    DEFAULT_RECORDING_TIMEOUT_MS,
    CaptureSettings,
)
from .engine import (
    convert_args,
    image_stream_args,
    merge_args,
    resolve_engine_path,
    segment_args,
    video_stream_args,
)
from .event_log import CaptureEventLog
from .frames import FrameFormat
from .registry import OperationKind, ProcessRegistry
from .rotation import SegmentRotator
from .supervisor import (
    FailureDetector,
    LivenessSource,
    ProcessSupervisor,
    SessionCallbacks,
    SupervisorError,
    detect_address_failure,
)

logger = logging.getLogger(__name__)

StreamFailCallback = Callable[[str], None]
StreamEndCallback = Callable[[str], None]


class CaptureSession:
    """Base class owning one supervised engine process.

    Subclasses describe the engine command, how liveness is judged and which
    callbacks apply; the session wires them into a :class:`ProcessSupervisor`
    on :meth:`start` and tears everything down on :meth:`dispose`.
    """

    kind: ClassVar[OperationKind] = OperationKind.CAPTURE
    liveness_source: ClassVar[LivenessSource] = LivenessSource.NONE

    def __init__(
        self,
        *,
        settings: CaptureSettings | None = None,
        registry: ProcessRegistry | None = None,
        callbacks: SessionCallbacks | None = None,
        failure_detector: FailureDetector | None = detect_address_failure,
        event_log: CaptureEventLog | None = None,
        label: str | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self._settings = settings or CaptureSettings()
        self._registry = (
            registry if registry is not None else ProcessRegistry(self._settings.supervisor.engine_name)
        )
        self._callbacks = callbacks or SessionCallbacks()
        self._failure_detector = failure_detector
        self._event_log = event_log
        self._label = label
        self._popen = popen
        self._supervisor: ProcessSupervisor | None = None
        self._dispose_lock = threading.Lock()
        self._disposed = False

    # ------------------------------ properties -----------------------------
    @property
    def settings(self) -> CaptureSettings:
        return self._settings

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def supervisor(self) -> ProcessSupervisor | None:
        return self._supervisor

    @property
    def label(self) -> str | None:
        return self._label

    @property
    def output_path(self) -> str | None:
        return None

    @property
    def pid(self) -> int | None:
        return self._supervisor.pid if self._supervisor is not None else None

    @property
    def error_message(self) -> str | None:
        return self._supervisor.error_message if self._supervisor is not None else None

    @property
    def is_running(self) -> bool:
        return self._supervisor is not None and self._supervisor.is_running

    # ------------------------------- control -------------------------------
    def start(self) -> "CaptureSession":
        if self._supervisor is not None:
            raise SupervisorError("Operation has already been started")
        engine = resolve_engine_path(self._settings.engine_path)
        self._prepare()
        supervisor = ProcessSupervisor(
            self._build_command(engine),
            kind=self.kind,
            registry=self._registry,
            settings=self._settings.supervisor,
            callbacks=self._callbacks,
            frame_format=self._frame_format(),
            liveness=self.liveness_source,
            timeout_ms=self._settings.resolved_timeout_ms(self._default_timeout_ms()),
            failure_detector=self._failure_detector,
            output_path=self.output_path,
            label=self._label,
            event_log=self._event_log,
            popen=self._popen,
        )
        self._supervisor = supervisor
        supervisor.start()
        self._after_start()
        return self

    def dispose(self) -> None:
        """Tear the operation down; concurrent callers wait for the first one."""

        with self._dispose_lock:
            if self._disposed:
                return
            self._disposed = True
            self._teardown()

    def status(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "label": self._label,
            "pid": self.pid,
            "running": self.is_running,
            "error": self.error_message,
            "output_path": self.output_path,
        }

    def __enter__(self) -> "CaptureSession":
        if self._supervisor is None:
            self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    # ------------------------------ hooks ----------------------------------
    def _build_command(self, engine: str) -> list[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def _frame_format(self) -> FrameFormat | None:
        return None

    def _default_timeout_ms(self) -> int:
        return DEFAULT_RECORDING_TIMEOUT_MS

    def _prepare(self) -> None:
        return None

    def _after_start(self) -> None:
        return None

    def _teardown(self) -> None:
        if self._supervisor is not None:
            self._supervisor.dispose()

    def _setting(self, name: str, default: int) -> int:
        value = getattr(self._settings, name)
        return int(value) if value is not None else default


def _prepare_output_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        logger.info("Replacing existing output %s", path)
        path.unlink()


class ImageStream(CaptureSession):
    """Decode a live source into still frames delivered to ``on_frame``."""

    liveness_source = LivenessSource.FRAMES

    def __init__(
        self,
        source: str,
        *,
        fmt: FrameFormat | str = FrameFormat.PNG,
        on_frame: Callable[[bytes], None] | None = None,
        on_stream_fail: StreamFailCallback | None = None,
        **kwargs,
    ) -> None:
        super().__init__(
            callbacks=SessionCallbacks(on_frame=on_frame, on_stream_fail=on_stream_fail),
            **kwargs,
        )
        self._source = source
        self._format = fmt if isinstance(fmt, FrameFormat) else FrameFormat.from_name(fmt)

    @property
    def source(self) -> str:
        return self._source

    @property
    def format(self) -> FrameFormat:
        return self._format

    @property
    def last_frame(self) -> bytes | None:
        return self._supervisor.last_frame if self._supervisor is not None else None

    @property
    def frame_count(self) -> int:
        return self._supervisor.frame_count if self._supervisor is not None else 0

    def status(self) -> dict[str, object]:
        payload = super().status()
        payload.update(
            {
                "source": self._source,
                "format": self._format.name,
                "frame_count": self.frame_count,
            }
        )
        return payload

    def _frame_format(self) -> FrameFormat:
        return self._format

    def _default_timeout_ms(self) -> int:
        if self._format is FrameFormat.JPEG:
            return DEFAULT_RECORDING_TIMEOUT_MS
        return DEFAULT_IMAGE_TIMEOUT_MS

    def _build_command(self, engine: str) -> list[str]:
        return image_stream_args(
            engine,
            self._source,
            self._format,
            quality=self._setting("quality", 1),
            framerate=self._setting("framerate", 1),
            codec=self._settings.codec,
            bitrate=self._settings.bitrate,
        )


class VideoStream(CaptureSession):
    """Record a live source into a single file.

    With ``cut_seconds`` the engine stops on its own after that duration and
    the output name receives a ``-YYYYmmdd-HHMMSS`` suffix.
    """

    liveness_source = LivenessSource.STDERR

    def __init__(
        self,
        source: str,
        output_path: Path | str,
        *,
        cut_seconds: int = 0,
        container: str = "matroska",
        on_stream_fail: StreamFailCallback | None = None,
        on_stream_end: StreamEndCallback | None = None,
        clock: Callable[[], datetime] = datetime.now,
        **kwargs,
    ) -> None:
        super().__init__(
            callbacks=SessionCallbacks(on_stream_fail=on_stream_fail, on_stream_end=on_stream_end),
            **kwargs,
        )
        if cut_seconds < 0:
            raise ValueError("cut_seconds must not be negative")
        self._source = source
        self._requested_path = Path(output_path)
        self._cut_seconds = int(cut_seconds)
        self._container = container
        self._clock = clock
        self._output_path = self._requested_path

    @property
    def output_path(self) -> str:
        return str(self._output_path)

    def _prepare(self) -> None:
        path = self._requested_path
        if self._cut_seconds > 0:
            stamp = self._clock().strftime("%Y%m%d-%H%M%S")
            path = path.with_name(f"{path.stem}-{stamp}{path.suffix}")
        self._output_path = path
        _prepare_output_file(path)

    def _build_command(self, engine: str) -> list[str]:
        return video_stream_args(
            engine,
            self._source,
            str(self._output_path),
            quality=self._setting("quality", 5),
            crf=self._settings.crf,
            framerate=self._setting("framerate", 30),
            codec=self._settings.codec,
            bitrate=self._settings.bitrate,
            container=self._container,
            duration_s=self._cut_seconds,
        )


class SequentialStream(CaptureSession):
    """Continuous recording split into ``cut_seconds`` segments.

    The engine writes into ``<output_dir>/Temp``; a :class:`SegmentRotator`
    moves each finished segment into ``output_dir``. Staging is wiped on
    start, and on disposal the segments left behind are promoted once the
    engine has exited.
    """

    liveness_source = LivenessSource.STDERR
    staging_name: ClassVar[str] = "Temp"

    def __init__(
        self,
        source: str,
        output_dir: Path | str,
        *,
        cut_seconds: int = 60,
        promote_on_dispose: bool = True,
        on_segment: Callable[[Path], None] | None = None,
        on_stream_fail: StreamFailCallback | None = None,
        on_stream_end: StreamEndCallback | None = None,
        clock: Callable[[], datetime] = datetime.now,
        **kwargs,
    ) -> None:
        super().__init__(
            callbacks=SessionCallbacks(on_stream_fail=on_stream_fail, on_stream_end=on_stream_end),
            **kwargs,
        )
        if cut_seconds < 1:
            raise ValueError("cut_seconds needs to be bigger than 0")
        self._source = source
        self._output_dir = Path(output_dir)
        self._staging_dir = self._output_dir / self.staging_name
        self._cut_seconds = int(cut_seconds)
        self._promote_on_dispose = promote_on_dispose
        self._rotator = SegmentRotator(
            self._staging_dir,
            self._output_dir,
            interval_s=self._settings.rotation_interval_s,
            clock=clock,
            on_promoted=on_segment,
            event_log=self._event_log,
        )

    @property
    def output_path(self) -> str:
        return str(self._output_dir)

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    @property
    def rotator(self) -> SegmentRotator:
        return self._rotator

    def _teardown(self) -> None:
        self._rotator.stop(timeout=self._settings.supervisor.join_timeout_s)
        super()._teardown()
        if not self._promote_on_dispose or self._supervisor is None:
            return
        if not self._supervisor.has_exited():
            logger.warning(
                "Engine for %s still running; leaving segments in %s", self._source, self._staging_dir
            )
            return
        self._rotator.promote_remaining()

    def _prepare(self) -> None:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        if self._staging_dir.exists():
            logger.debug("Clearing staging directory %s", self._staging_dir)
            shutil.rmtree(self._staging_dir)
        self._staging_dir.mkdir(parents=True)

    def _after_start(self) -> None:
        self._rotator.start()

    def _build_command(self, engine: str) -> list[str]:
        return segment_args(
            engine,
            self._source,
            str(self._staging_dir / "output%09d.ts"),
            segment_seconds=self._cut_seconds,
            quality=self._setting("quality", 5),
            crf=self._settings.crf,
            framerate=self._setting("framerate", 30),
            codec=self._settings.codec,
            bitrate=self._settings.bitrate,
        )


class VideoConverter(CaptureSession):
    """Copy a recording into a new container."""

    kind = OperationKind.CONVERT

    def __init__(
        self,
        input_path: Path | str,
        output_path: Path | str,
        *,
        on_convert_end: StreamEndCallback | None = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault("failure_detector", None)
        super().__init__(callbacks=SessionCallbacks(on_stream_end=on_convert_end), **kwargs)
        self._input_path = Path(input_path)
        self._output_path = Path(output_path)

    @property
    def output_path(self) -> str:
        return str(self._output_path)

    def _prepare(self) -> None:
        _prepare_output_file(self._output_path)

    def _build_command(self, engine: str) -> list[str]:
        return convert_args(engine, str(self._input_path), str(self._output_path))


class VideoMerge(CaptureSession):
    """Concatenate recordings into one scaled video."""

    kind = OperationKind.MERGE

    def __init__(
        self,
        files: Sequence[Path | str],
        output_path: Path | str,
        *,
        resolution: str = "1920:1080",
        on_merge_end: StreamEndCallback | None = None,
        **kwargs,
    ) -> None:
        kwargs.setdefault("failure_detector", None)
        super().__init__(callbacks=SessionCallbacks(on_stream_end=on_merge_end), **kwargs)
        if not files:
            raise ValueError("At least one input file is required to merge")
        self._files = [Path(item) for item in files]
        self._output_path = Path(output_path)
        self._resolution = resolution

    @property
    def output_path(self) -> str:
        return str(self._output_path)

    def _prepare(self) -> None:
        _prepare_output_file(self._output_path)

    def _build_command(self, engine: str) -> list[str]:
        return merge_args(engine, self._files, str(self._output_path), resolution=self._resolution)


__all__ = [
    "CaptureSession",
    "ImageStream",
    "SequentialStream",
    "VideoConverter",
    "VideoMerge",
    "VideoStream",
]
