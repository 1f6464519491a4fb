"""Lifecycle supervision for one external engine subprocess."""
from __future__ import annotations

import io
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Sequence

import psutil

from .config import DEFAULT_IMAGE_TIMEOUT_MS, SupervisorSettings
from .event_log import CaptureEventLog
from .frames import FrameFormat, iter_frames
from .registry import OperationKind, ProcessRegistry

logger = logging.getLogger(__name__)

STREAM_TIMEOUT_MESSAGE = "Stream Timeout"
ADDRESS_FAILURE_PREFIX = "Error opening input files: "
ADDRESS_FAILURE_MARKER = ADDRESS_FAILURE_PREFIX + "Server returned"

FailureDetector = Callable[[str], "str | None"]


class SupervisorError(RuntimeError):
    """Raised when the engine process cannot be launched."""


def detect_address_failure(line: str) -> str | None:
    """Return the failure message for an unreachable-source diagnostic line."""

    if line.startswith(ADDRESS_FAILURE_MARKER):
        return line[len(ADDRESS_FAILURE_PREFIX):]
    return None


class LivenessSource(str, Enum):
    """Activity that counts as proof the engine is still producing output."""

    FRAMES = "frames"
    STDERR = "stderr"
    NONE = "none"


@dataclass(slots=True)
class SessionCallbacks:
    """Caller supplied hooks invoked from the supervisor's worker threads."""

    on_frame: Callable[[bytes], None] | None = None
    on_stream_fail: Callable[[str], None] | None = None
    on_stream_end: Callable[[str], None] | None = None


def _join(thread: threading.Thread | None, timeout: float) -> None:
    if thread is None or thread is threading.current_thread() or not thread.is_alive():
        return
    thread.join(timeout=timeout)
    if thread.is_alive():
        logger.debug("Thread %s still running after %.2fs", thread.name, timeout)


class LivenessMonitor:
    """Tick counter declaring the stream dead after ``threshold_ms`` of silence."""

    def __init__(
        self,
        threshold_ms: int,
        on_expired: Callable[[], None],
        *,
        tick_ms: int = 100,
        name: str = "LivenessMonitor",
    ) -> None:
        if threshold_ms <= 0:
            raise ValueError("threshold_ms must be positive")
        if tick_ms <= 0:
            raise ValueError("tick_ms must be positive")
        self._threshold_ms = int(threshold_ms)
        self._tick_ms = int(tick_ms)
        self._on_expired = on_expired
        self._name = name
        self._elapsed_ms = 0
        self._expired = False
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def threshold_ms(self) -> int:
        return self._threshold_ms

    @property
    def elapsed_ms(self) -> int:
        with self._lock:
            return self._elapsed_ms

    @property
    def expired(self) -> bool:
        with self._lock:
            return self._expired

    def reset(self) -> None:
        with self._lock:
            self._elapsed_ms = 0

    def tick(self) -> bool:
        """Advance the counter by one tick; returns ``True`` on expiry."""

        with self._lock:
            if self._expired or self._stop_event.is_set():
                return False
            self._elapsed_ms += self._tick_ms
            if self._elapsed_ms < self._threshold_ms:
                return False
            self._expired = True
        self._stop_event.set()
        self._on_expired()
        return True

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def is_current_thread(self) -> bool:
        return self._thread is not None and self._thread is threading.current_thread()

    def stop(self, *, timeout: float | None = None) -> None:
        self._stop_event.set()
        if timeout is not None:
            _join(self._thread, timeout)

    def _run(self) -> None:
        interval = self._tick_ms / 1000.0
        while not self._stop_event.wait(interval):
            try:
                if self.tick():
                    break
            except Exception:  # pragma: no cover - defensive guard
                logger.exception("Liveness tick failed")


class ProcessSupervisor:
    """Own one engine subprocess from launch to disposal.

    Output is consumed by dedicated threads: stdout is scanned for frames when
    a :class:`FrameFormat` is given (drained otherwise), stderr is checked line
    by line against the failure detector, and a watcher waits for the exit
    code. A failure is reported at most once and is terminal; restarting
    means creating a new supervisor.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        kind: OperationKind | str = OperationKind.CAPTURE,
        registry: ProcessRegistry | None = None,
        settings: SupervisorSettings | None = None,
        callbacks: SessionCallbacks | None = None,
        frame_format: FrameFormat | None = None,
        liveness: LivenessSource | str = LivenessSource.NONE,
        timeout_ms: int | None = None,
        failure_detector: FailureDetector | None = detect_address_failure,
        output_path: Path | str | None = None,
        label: str | None = None,
        event_log: CaptureEventLog | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        if not command:
            raise ValueError("Engine command must not be empty")
        self._command = [str(part) for part in command]
        self._kind = OperationKind(kind)
        self._settings = settings or SupervisorSettings()
        self._registry = registry if registry is not None else ProcessRegistry(self._settings.engine_name)
        self._callbacks = callbacks or SessionCallbacks()
        self._frame_format = frame_format
        self._liveness_source = LivenessSource(liveness)
        if self._liveness_source is LivenessSource.FRAMES and frame_format is None:
            raise ValueError("Frame based liveness requires a frame format")
        self._failure_detector = failure_detector
        self._output_path = str(output_path) if output_path is not None else None
        self._label = label
        self._event_log = event_log
        self._popen = popen

        self._liveness: LivenessMonitor | None = None
        if self._liveness_source is not LivenessSource.NONE:
            self._liveness = LivenessMonitor(
                timeout_ms if timeout_ms is not None else DEFAULT_IMAGE_TIMEOUT_MS,
                self._on_liveness_expired,
                tick_ms=self._settings.tick_ms,
                name=f"{self._kind.value}-liveness",
            )

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._process: subprocess.Popen | None = None
        self._pid: int | None = None
        self._threads: list[threading.Thread] = []
        self._started = False
        self._disposed = False
        self._teardown_done = threading.Event()
        self._failed = False
        self._error_message: str | None = None
        self._returncode: int | None = None
        self._frame_count = 0
        self._last_frame: bytes | None = None

    # ------------------------------ properties -----------------------------
    @property
    def kind(self) -> OperationKind:
        return self._kind

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def liveness(self) -> LivenessMonitor | None:
        return self._liveness

    @property
    def error_message(self) -> str | None:
        with self._lock:
            return self._error_message

    @property
    def failed(self) -> bool:
        with self._lock:
            return self._failed

    @property
    def returncode(self) -> int | None:
        with self._lock:
            return self._returncode

    @property
    def disposed(self) -> bool:
        with self._lock:
            return self._disposed

    @property
    def is_running(self) -> bool:
        with self._lock:
            return (
                self._started
                and not self._disposed
                and not self._failed
                and self._returncode is None
            )

    @property
    def frame_count(self) -> int:
        with self._lock:
            return self._frame_count

    @property
    def last_frame(self) -> bytes | None:
        with self._lock:
            return self._last_frame

    # ------------------------------- control -------------------------------
    def start(self) -> None:
        """Launch the engine and its worker threads."""

        with self._lock:
            if self._started:
                raise SupervisorError("Supervisor has already been started")
            if self._disposed:
                raise SupervisorError("Supervisor has been disposed")
            self._started = True
        try:
            process = self._popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise SupervisorError(f"failed to launch {self._command[0]}: {exc}") from exc
        with self._lock:
            self._process = process
            self._pid = process.pid
        self._registry.add(self._kind, process.pid, label=self._label)
        logger.info("Started %s engine process %s", self._kind.value, process.pid)
        self._record("started", f"Engine process {process.pid} started", metadata={"label": self._label})

        suffix = f"{self._kind.value}-{process.pid}"
        if process.stdout is not None:
            target = self._read_frames if self._frame_format is not None else self._drain_output
            self._spawn(target, process.stdout, name=f"{suffix}-stdout")
        if process.stderr is not None:
            self._spawn(self._read_diagnostics, process.stderr, name=f"{suffix}-stderr")
        self._spawn(self._watch_exit, process, name=f"{suffix}-exit")
        if self._liveness is not None:
            self._liveness.start()

    def report_liveness(self) -> None:
        """Reset the liveness counter after qualifying engine activity."""

        if self._liveness is not None:
            self._liveness.reset()

    def dispose(self) -> None:
        """Stop the engine gracefully, killing it when it does not comply.

        Safe to call repeatedly and from several threads. The first call does
        the work; later callers block until it has finished, except the
        supervisor's own worker threads, which return at once. Errors writing
        to or looking up an engine that already exited are ignored.
        """

        with self._lock:
            if self._disposed:
                owner = False
            else:
                self._disposed = True
                owner = True
            process = self._process
        if not owner:
            if not self._on_worker_thread():
                self._teardown_done.wait()
            return
        try:
            self._teardown(process)
        finally:
            self._teardown_done.set()

    def has_exited(self) -> bool:
        """Return ``True`` once the engine is gone or was never launched."""

        with self._lock:
            process = self._process
            code = self._returncode
        if process is None or code is not None or process.poll() is not None:
            return True
        return self._registry.resolve(process.pid) is None

    def __enter__(self) -> "ProcessSupervisor":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    # ----------------------------- implementation --------------------------
    def _teardown(self, process: subprocess.Popen | None) -> None:
        self._stop_event.set()
        if self._liveness is not None:
            self._liveness.stop()
        if process is None:
            return
        pid = process.pid
        self._send_quit(process)
        try:
            self._await_exit(process)
        finally:
            if self._registry.remove(self._kind, pid):
                self._record("disposed", f"Engine process {pid} released")
            for thread in self._threads:
                _join(thread, self._settings.join_timeout_s)
            if self._liveness is not None:
                self._liveness.stop(timeout=self._settings.join_timeout_s)
        logger.info("Disposed %s engine process %s", self._kind.value, pid)

    def _on_worker_thread(self) -> bool:
        current = threading.current_thread()
        if any(thread is current for thread in self._threads):
            return True
        return self._liveness is not None and self._liveness.is_current_thread()

    def _spawn(self, target: Callable[..., None], *args: object, name: str) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _record(self, event: str, message: str, *, metadata: dict[str, object | None] | None = None) -> None:
        if self._event_log is None:
            return
        self._event_log.record(self._kind.value, event, message, pid=self._pid, metadata=metadata)

    def _send_quit(self, process: subprocess.Popen) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(f"{self._settings.quit_command}\n".encode("utf-8"))
            stdin.flush()
        except (OSError, ValueError) as exc:
            logger.debug("Quit command not delivered to %s: %s", process.pid, exc)
        try:
            stdin.close()
        except (OSError, ValueError):
            pass

    def _await_exit(self, process: subprocess.Popen) -> None:
        attempts = 0
        while True:
            if process.returncode is not None or process.poll() is not None:
                return
            engine = self._registry.resolve(process.pid)
            if engine is None:
                return
            if attempts >= self._settings.poll_attempts:
                logger.warning(
                    "Engine process %s ignored the quit command; killing it", process.pid
                )
                try:
                    engine.kill()
                except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                    logger.debug("Kill of %s failed: %s", process.pid, exc)
                self._record("forced", f"Engine process {process.pid} force-killed")
                self._reap(process)
                return
            time.sleep(self._settings.poll_interval_s)
            attempts += 1

    def _reap(self, process: subprocess.Popen) -> None:
        try:
            process.wait(timeout=self._settings.kill_timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Engine process %s still running %.1fs after kill", process.pid, self._settings.kill_timeout_s
            )

    def _fail(self, message: str) -> None:
        with self._lock:
            if self._failed or self._disposed:
                return
            self._failed = True
            self._error_message = message
        if self._liveness is not None:
            self._liveness.stop()
        logger.warning("%s operation failed (pid %s): %s", self._kind.value, self._pid, message)
        self._record("failed", message)
        callback = self._callbacks.on_stream_fail
        if callback is not None:
            try:
                callback(message)
            except Exception:
                logger.exception("on_stream_fail callback raised")

    def _on_liveness_expired(self) -> None:
        self._fail(STREAM_TIMEOUT_MESSAGE)

    def _on_header(self) -> None:
        if self._liveness_source is LivenessSource.FRAMES:
            self.report_liveness()

    def _deliver_frame(self, frame: bytes) -> None:
        with self._lock:
            self._frame_count += 1
            self._last_frame = frame
        callback = self._callbacks.on_frame
        if callback is None:
            return
        try:
            callback(frame)
        except Exception:
            logger.exception("on_frame callback raised")

    def _read_frames(self, stream: IO[bytes]) -> None:
        assert self._frame_format is not None
        try:
            for frame in iter_frames(stream, self._frame_format, on_header=self._on_header):
                # Keep draining after disposal so the engine never blocks on a full pipe.
                if self._stop_event.is_set():
                    continue
                self._deliver_frame(frame)
        except (OSError, ValueError) as exc:
            logger.debug("Frame reader stopped: %s", exc)
        finally:
            self._close_quietly(stream)

    def _drain_output(self, stream: IO[bytes]) -> None:
        try:
            while True:
                data = stream.read(4096)
                if not data:
                    break
                logger.debug("[%s output] %d bytes", self._kind.value, len(data))
        except (OSError, ValueError) as exc:
            logger.debug("Output reader stopped: %s", exc)
        finally:
            self._close_quietly(stream)

    def _read_diagnostics(self, stream: IO[bytes]) -> None:
        buffered = stream if isinstance(stream, io.BufferedIOBase) else io.BufferedReader(stream)
        # Universal newlines split FFmpeg's carriage-return progress updates into lines.
        text = io.TextIOWrapper(buffered, encoding="utf-8", errors="replace", newline=None)
        try:
            for raw_line in text:
                line = raw_line.rstrip("\n")
                if not line:
                    continue
                logger.debug("[%s %s] %s", self._kind.value, self._pid, line)
                if self._stop_event.is_set():
                    continue
                if self._liveness_source is LivenessSource.STDERR:
                    self.report_liveness()
                if self._failure_detector is None:
                    continue
                message = self._failure_detector(line)
                if message is not None:
                    self._fail(message)
        except (OSError, ValueError) as exc:
            logger.debug("Diagnostic reader stopped: %s", exc)
        finally:
            self._close_quietly(text)

    def _watch_exit(self, process: subprocess.Popen) -> None:
        code = process.wait()
        with self._lock:
            self._returncode = code
            disposing = self._disposed
        if code != 0:
            logger.info("%s engine process %s exited with code %s", self._kind.value, process.pid, code)
            self._record("exited", f"Engine process {process.pid} exited with code {code}")
            return
        self._record("ended", f"Engine process {process.pid} completed", metadata={"output": self._output_path})
        if self._output_path is None:
            return
        if self._liveness is not None:
            self._liveness.stop()
        callback = self._callbacks.on_stream_end
        if disposing or callback is None:
            return
        try:
            callback(self._output_path)
        except Exception:
            logger.exception("on_stream_end callback raised")

    @staticmethod
    def _close_quietly(stream: IO) -> None:
        try:
            stream.close()
        except (OSError, ValueError):
            pass


__all__ = [
    "ADDRESS_FAILURE_PREFIX",
    "FailureDetector",
    "LivenessMonitor",
    "LivenessSource",
    "ProcessSupervisor",
    "STREAM_TIMEOUT_MESSAGE",
    "SessionCallbacks",
    "SupervisorError",
    "detect_address_failure",
]
