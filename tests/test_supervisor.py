"""Tests for the engine process supervisor."""

from __future__ import annotations

import io
import logging
import queue
import subprocess
import threading
import time

import psutil
import pytest

from rtsp_capture import registry as registry_module
from rtsp_capture.config import SupervisorSettings
from rtsp_capture.event_log import CaptureEventLog
from rtsp_capture.frames import FrameFormat
from rtsp_capture.registry import OperationKind, ProcessRegistry
from rtsp_capture.supervisor import (
    STREAM_TIMEOUT_MESSAGE,
    LivenessMonitor,
    LivenessSource,
    ProcessSupervisor,
    SessionCallbacks,
    SupervisorError,
    detect_address_failure,
)

ADDRESS_FAILURE = "Error opening input files: Server returned 401"


class _FakeStdin:
    def __init__(self, process: "_FakeProcess", *, broken: bool = False) -> None:
        self._process = process
        self._broken = broken
        self.writes: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed file")
        if self._broken:
            raise BrokenPipeError("engine already gone")
        self.writes.append(bytes(data))
        if data.strip() == b"q" and self._process.exit_on_quit:
            self._process.finish(0)
        return len(data)

    def flush(self) -> None:
        if self.closed:
            raise ValueError("flush of closed file")

    def close(self) -> None:
        self.closed = True


class _FakeProcess:
    """Stand-in for ``subprocess.Popen`` driven entirely from the test."""

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        *,
        pid: int = 4242,
        exit_on_quit: bool = True,
        broken_stdin: bool = False,
    ) -> None:
        self.pid = pid
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self.stdin = _FakeStdin(self, broken=broken_stdin)
        self.exit_on_quit = exit_on_quit
        self.returncode: int | None = None
        self.command: list[str] | None = None
        self.popen_kwargs: dict[str, object] = {}
        self._exited = threading.Event()

    def __call__(self, command, **kwargs) -> "_FakeProcess":
        self.command = list(command)
        self.popen_kwargs = kwargs
        return self

    def finish(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
        self._exited.set()

    def wait(self, timeout: float | None = None) -> int | None:
        self._exited.wait(timeout)
        return self.returncode

    def poll(self) -> int | None:
        return self.returncode


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class _StubEngine:
    """Replacement for :class:`psutil.Process` keyed on a fake process."""

    def __init__(self, fake: _FakeProcess, name: str = "ffmpeg", *, kill_delay: float = 0.0) -> None:
        self._fake = fake
        self._name = name
        self._kill_delay = kill_delay
        self.kills = 0

    def __call__(self, pid: int) -> "_StubEngine":
        if self._fake.returncode is not None:
            raise psutil.NoSuchProcess(pid)
        return self

    def name(self) -> str:
        return self._name

    def kill(self) -> None:
        self.kills += 1
        if self._kill_delay:
            threading.Timer(self._kill_delay, self._fake.finish, args=(-9,)).start()
        else:
            self._fake.finish(-9)


class _GatedStream(io.RawIOBase):
    """Pipe end that only yields the chunks a test pushes into it."""

    def __init__(self) -> None:
        super().__init__()
        self._chunks: queue.Queue[bytes] = queue.Queue()
        self._pending = b""
        self._eof = False

    def push(self, data: bytes) -> None:
        self._chunks.put(data)

    def end(self) -> None:
        self._chunks.put(b"")

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if not self._pending and not self._eof:
            self._pending = self._chunks.get()
            self._eof = not self._pending
        if self._eof:
            return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size



def _supervisor(
    fake: _FakeProcess,
    settings: SupervisorSettings,
    **kwargs,
) -> ProcessSupervisor:
    kwargs.setdefault("command", ["ffmpeg", "-i", "rtsp://camera/stream"])
    return ProcessSupervisor(settings=settings, popen=fake, **kwargs)


# ----------------------------- liveness monitor -----------------------------
def test_liveness_fails_once_after_threshold_ticks() -> None:
    expired: list[int] = []
    monitor = LivenessMonitor(5000, lambda: expired.append(1), tick_ms=100)

    results = [monitor.tick() for _ in range(49)]

    assert not any(results)
    assert expired == []
    assert monitor.elapsed_ms == 4900

    assert monitor.tick() is True
    assert expired == [1]
    assert monitor.expired is True

    assert monitor.tick() is False
    assert expired == [1]


def test_liveness_reset_restarts_counter() -> None:
    expired: list[int] = []
    monitor = LivenessMonitor(5000, lambda: expired.append(1), tick_ms=100)

    for _ in range(49):
        monitor.tick()
    monitor.reset()
    for _ in range(49):
        monitor.tick()

    assert expired == []
    assert monitor.elapsed_ms == 4900


def test_stopped_liveness_never_expires() -> None:
    expired: list[int] = []
    monitor = LivenessMonitor(100, lambda: expired.append(1), tick_ms=100)

    monitor.stop()

    assert monitor.tick() is False
    assert expired == []


def test_liveness_rejects_invalid_threshold() -> None:
    with pytest.raises(ValueError):
        LivenessMonitor(0, lambda: None)


# ------------------------------ failure detection ----------------------------
def test_address_failure_prefix_is_stripped() -> None:
    assert detect_address_failure(ADDRESS_FAILURE) == "Server returned 401"
    assert detect_address_failure("frame=  10 fps=0.0 q=0.0") is None
    assert detect_address_failure("Error opening input files: No such file") is None


def test_silent_stream_reports_timeout() -> None:
    settings = SupervisorSettings(tick_ms=10, poll_interval_s=0.001, poll_attempts=3, join_timeout_s=0.2)
    failures: list[str] = []
    fake = _FakeProcess()
    supervisor = _supervisor(
        fake,
        settings,
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        frame_format=FrameFormat.JPEG,
        liveness=LivenessSource.FRAMES,
        timeout_ms=50,
    )

    supervisor.start()
    try:
        assert _wait_for(lambda: failures)
        assert failures == [STREAM_TIMEOUT_MESSAGE]
        assert supervisor.failed is True
        assert supervisor.error_message == STREAM_TIMEOUT_MESSAGE
    finally:
        supervisor.dispose()
    assert failures == [STREAM_TIMEOUT_MESSAGE]


def test_stderr_address_failure_is_reported(fast_settings: SupervisorSettings) -> None:
    failures: list[str] = []
    fake = _FakeProcess(stderr=(ADDRESS_FAILURE + "\n").encode())
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        liveness=LivenessSource.STDERR,
        timeout_ms=60000,
    )

    with supervisor:
        assert _wait_for(lambda: failures)

    assert failures == ["Server returned 401"]


def test_failure_is_reported_only_once(fast_settings: SupervisorSettings) -> None:
    failures: list[str] = []
    lines = "\n".join([ADDRESS_FAILURE, "Error opening input files: Server returned 404", ""])
    fake = _FakeProcess(stderr=lines.encode())
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        liveness=LivenessSource.STDERR,
        timeout_ms=60000,
    )

    supervisor.start()
    assert _wait_for(lambda: failures)
    supervisor.dispose()

    assert failures == ["Server returned 401"]


def test_other_diagnostics_are_not_failures(fast_settings: SupervisorSettings) -> None:
    failures: list[str] = []
    fake = _FakeProcess(stderr=b"Input #0, rtsp\r\nframe=1 fps=0.0\r\nframe=2 fps=1.0\n")
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        liveness=LivenessSource.STDERR,
        timeout_ms=60000,
    )

    supervisor.start()
    assert _wait_for(lambda: fake.stderr.closed)
    supervisor.dispose()

    assert failures == []


def test_custom_failure_detector(fast_settings: SupervisorSettings) -> None:
    failures: list[str] = []
    fake = _FakeProcess(stderr=b"fatal: boom\n")
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        failure_detector=lambda line: line[len("fatal: "):] if line.startswith("fatal: ") else None,
    )

    with supervisor:
        assert _wait_for(lambda: failures)

    assert failures == ["boom"]


def test_callback_errors_are_logged(
    fast_settings: SupervisorSettings, caplog: pytest.LogCaptureFixture
) -> None:
    def explode(message: str) -> None:
        raise RuntimeError(message)

    fake = _FakeProcess(stderr=(ADDRESS_FAILURE + "\n").encode())
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=explode),
    )

    with caplog.at_level(logging.ERROR, logger="rtsp_capture.supervisor"):
        with supervisor:
            assert _wait_for(lambda: "on_stream_fail callback raised" in caplog.text)

    assert supervisor.failed is True


def test_dispose_from_failure_callback(fast_settings: SupervisorSettings) -> None:
    holder: dict[str, ProcessSupervisor] = {}
    fake = _FakeProcess(stderr=(ADDRESS_FAILURE + "\n").encode())
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_fail=lambda message: holder["supervisor"].dispose()),
    )
    holder["supervisor"] = supervisor

    supervisor.start()

    assert _wait_for(lambda: supervisor.disposed)
    assert _wait_for(lambda: fake.returncode == 0)
    assert _wait_for(lambda: fake.pid not in supervisor.registry)


# ---------------------------------- frames -----------------------------------
def test_frames_are_delivered_in_order(fast_settings: SupervisorSettings) -> None:
    jpeg = FrameFormat.JPEG
    first = jpeg.header + b"one" + jpeg.footer
    second = jpeg.header + b"two" + jpeg.footer
    frames: list[bytes] = []
    fake = _FakeProcess(stdout=first + second)
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_frame=frames.append),
        frame_format=jpeg,
        liveness=LivenessSource.FRAMES,
        timeout_ms=60000,
    )

    with supervisor:
        assert _wait_for(lambda: supervisor.frame_count == 2)

    assert frames == [first, second]
    assert supervisor.last_frame == second


def test_frame_based_liveness_requires_format(fast_settings: SupervisorSettings) -> None:
    with pytest.raises(ValueError):
        _supervisor(_FakeProcess(), fast_settings, liveness=LivenessSource.FRAMES)


# ---------------------------------- exit -------------------------------------
def test_clean_exit_reports_output(fast_settings: SupervisorSettings) -> None:
    ended: list[str] = []
    fake = _FakeProcess()
    supervisor = _supervisor(
        fake,
        fast_settings,
        kind=OperationKind.CONVERT,
        callbacks=SessionCallbacks(on_stream_end=ended.append),
        output_path="/recordings/out.mp4",
    )

    supervisor.start()
    fake.finish(0)

    assert _wait_for(lambda: ended)
    assert ended == ["/recordings/out.mp4"]
    assert supervisor.returncode == 0
    assert supervisor.is_running is False
    supervisor.dispose()
    assert ended == ["/recordings/out.mp4"]


def test_nonzero_exit_is_not_completion(fast_settings: SupervisorSettings) -> None:
    ended: list[str] = []
    failures: list[str] = []
    fake = _FakeProcess()
    supervisor = _supervisor(
        fake,
        fast_settings,
        kind=OperationKind.MERGE,
        callbacks=SessionCallbacks(on_stream_end=ended.append, on_stream_fail=failures.append),
        output_path="/recordings/merged.mp4",
    )

    supervisor.start()
    fake.finish(1)

    assert _wait_for(lambda: supervisor.returncode == 1)
    supervisor.dispose()
    assert ended == []
    assert failures == []


def test_no_completion_after_dispose(fast_settings: SupervisorSettings) -> None:
    ended: list[str] = []
    fake = _FakeProcess()
    supervisor = _supervisor(
        fake,
        fast_settings,
        callbacks=SessionCallbacks(on_stream_end=ended.append),
        output_path="/recordings/out.mkv",
    )

    supervisor.start()
    supervisor.dispose()

    assert _wait_for(lambda: supervisor.returncode == 0)
    assert ended == []


# --------------------------------- disposal ----------------------------------
def test_start_launches_engine_with_pipes(fast_settings: SupervisorSettings) -> None:
    fake = _FakeProcess(pid=501)
    registry = ProcessRegistry()
    supervisor = _supervisor(fake, fast_settings, registry=registry, label="driveway")

    supervisor.start()
    try:
        assert fake.command == ["ffmpeg", "-i", "rtsp://camera/stream"]
        assert fake.popen_kwargs["stdin"] is subprocess.PIPE
        assert fake.popen_kwargs["stdout"] is subprocess.PIPE
        assert fake.popen_kwargs["stderr"] is subprocess.PIPE
        assert supervisor.pid == 501
        assert [record.label for record in registry.active(OperationKind.CAPTURE)] == ["driveway"]
    finally:
        supervisor.dispose()


def test_dispose_is_idempotent(fast_settings: SupervisorSettings) -> None:
    events = CaptureEventLog()
    registry = ProcessRegistry()
    fake = _FakeProcess(pid=777)
    supervisor = _supervisor(fake, fast_settings, registry=registry, event_log=events)

    supervisor.start()
    assert 777 in registry

    supervisor.dispose()
    supervisor.dispose()

    assert 777 not in registry
    assert fake.stdin.writes == [b"q\n"]
    assert fake.stdin.closed is True
    assert [entry.event for entry in events.tail()].count("disposed") == 1


def test_dispose_before_start_is_harmless(fast_settings: SupervisorSettings) -> None:
    supervisor = _supervisor(_FakeProcess(), fast_settings)

    supervisor.dispose()

    assert supervisor.disposed is True
    with pytest.raises(SupervisorError):
        supervisor.start()


def test_stubborn_engine_is_killed(
    monkeypatch: pytest.MonkeyPatch, fast_settings: SupervisorSettings
) -> None:
    events = CaptureEventLog()
    fake = _FakeProcess(exit_on_quit=False)
    engine = _StubEngine(fake)
    monkeypatch.setattr(registry_module.psutil, "Process", engine)
    supervisor = _supervisor(fake, fast_settings, event_log=events)

    supervisor.start()
    supervisor.dispose()

    assert engine.kills == 1
    assert fake.returncode == -9
    assert fake.pid not in supervisor.registry
    assert "forced" in [entry.event for entry in events.tail()]


def test_reused_identifier_is_not_killed(
    monkeypatch: pytest.MonkeyPatch, fast_settings: SupervisorSettings
) -> None:
    fake = _FakeProcess(exit_on_quit=False)
    impostor = _StubEngine(fake, name="python3")
    monkeypatch.setattr(registry_module.psutil, "Process", impostor)
    supervisor = _supervisor(fake, fast_settings)

    supervisor.start()
    supervisor.dispose()

    assert impostor.kills == 0
    assert fake.pid not in supervisor.registry
    fake.finish(0)


def test_quit_write_failure_is_ignored(fast_settings: SupervisorSettings) -> None:
    fake = _FakeProcess(broken_stdin=True)
    supervisor = _supervisor(fake, fast_settings)

    supervisor.start()
    fake.finish(0)
    assert _wait_for(lambda: supervisor.returncode == 0)

    supervisor.dispose()

    assert fake.pid not in supervisor.registry


def test_start_twice_is_rejected(fast_settings: SupervisorSettings) -> None:
    supervisor = _supervisor(_FakeProcess(), fast_settings)

    supervisor.start()
    try:
        with pytest.raises(SupervisorError):
            supervisor.start()
    finally:
        supervisor.dispose()


def test_launch_failure_raises_supervisor_error(fast_settings: SupervisorSettings) -> None:
    def missing(command, **kwargs):
        raise FileNotFoundError(command[0])

    supervisor = ProcessSupervisor(["ffmpeg"], settings=fast_settings, popen=missing)

    with pytest.raises(SupervisorError):
        supervisor.start()
    assert supervisor.registry.active() == []


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessSupervisor([])


# ------------------------------ liveness wiring ------------------------------
def _manual_liveness_settings() -> SupervisorSettings:
    # Ticks are driven by the test; the background timer never fires in time.
    return SupervisorSettings(tick_ms=60000, poll_interval_s=0.001, poll_attempts=3, join_timeout_s=0.2)


def test_frame_header_resets_liveness() -> None:
    jpeg = FrameFormat.JPEG
    failures: list[str] = []
    stdout = _GatedStream()
    fake = _FakeProcess()
    fake.stdout = stdout
    supervisor = _supervisor(
        fake,
        _manual_liveness_settings(),
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        frame_format=jpeg,
        liveness=LivenessSource.FRAMES,
        timeout_ms=600000,
    )

    supervisor.start()
    try:
        liveness = supervisor.liveness
        assert liveness is not None
        for _ in range(9):
            liveness.tick()
        assert liveness.elapsed_ms == 540000

        stdout.push(jpeg.header)
        assert _wait_for(lambda: liveness.elapsed_ms == 0)

        for _ in range(9):
            liveness.tick()
        assert failures == []

        stdout.push(b"payload" + jpeg.footer)
        assert _wait_for(lambda: supervisor.frame_count == 1)
    finally:
        stdout.end()
        supervisor.dispose()
    assert failures == []


def test_diagnostic_line_resets_liveness() -> None:
    failures: list[str] = []
    stderr = _GatedStream()
    fake = _FakeProcess()
    fake.stderr = stderr
    supervisor = _supervisor(
        fake,
        _manual_liveness_settings(),
        callbacks=SessionCallbacks(on_stream_fail=failures.append),
        liveness=LivenessSource.STDERR,
        timeout_ms=600000,
    )

    supervisor.start()
    try:
        liveness = supervisor.liveness
        assert liveness is not None
        for _ in range(9):
            liveness.tick()

        stderr.push(b"frame=  42 fps= 25 q=28.0 size=    512kB\n")
        assert _wait_for(lambda: liveness.elapsed_ms == 0)

        for _ in range(9):
            liveness.tick()
        assert failures == []
    finally:
        stderr.end()
        supervisor.dispose()
    assert failures == []


def test_diagnostics_do_not_reset_frame_liveness() -> None:
    stderr = _GatedStream()
    fake = _FakeProcess()
    fake.stderr = stderr
    supervisor = _supervisor(
        fake,
        _manual_liveness_settings(),
        frame_format=FrameFormat.JPEG,
        liveness=LivenessSource.FRAMES,
        timeout_ms=600000,
    )

    supervisor.start()
    try:
        liveness = supervisor.liveness
        assert liveness is not None
        liveness.tick()
        stderr.push(b"frame=1 fps=0.0\n")
        stderr.end()
        assert _wait_for(lambda: fake.stderr.closed)
        assert liveness.elapsed_ms == 60000
    finally:
        supervisor.dispose()


# --------------------------- concurrent disposal -----------------------------
def test_failed_supervisor_is_not_running(fast_settings: SupervisorSettings) -> None:
    fake = _FakeProcess(stderr=(ADDRESS_FAILURE + "\n").encode())
    supervisor = _supervisor(fake, fast_settings)

    supervisor.start()
    try:
        assert _wait_for(lambda: supervisor.failed)
        assert supervisor.returncode is None
        assert supervisor.is_running is False
    finally:
        supervisor.dispose()


def test_second_dispose_waits_for_first(
    monkeypatch: pytest.MonkeyPatch, fast_settings: SupervisorSettings
) -> None:
    settings = SupervisorSettings(poll_interval_s=0.005, poll_attempts=10, join_timeout_s=0.2)
    fake = _FakeProcess(exit_on_quit=False)
    monkeypatch.setattr(registry_module.psutil, "Process", _StubEngine(fake, kill_delay=0.05))
    supervisor = _supervisor(fake, settings)
    supervisor.start()

    first = threading.Thread(target=supervisor.dispose)
    first.start()
    assert _wait_for(lambda: supervisor.disposed)

    supervisor.dispose()

    assert fake.returncode == -9
    assert fake.pid not in supervisor.registry
    assert supervisor.has_exited() is True
    first.join(timeout=2)
    assert not first.is_alive()


def test_forced_kill_waits_for_exit(
    monkeypatch: pytest.MonkeyPatch, fast_settings: SupervisorSettings
) -> None:
    fake = _FakeProcess(exit_on_quit=False)
    engine = _StubEngine(fake, kill_delay=0.05)
    monkeypatch.setattr(registry_module.psutil, "Process", engine)
    supervisor = _supervisor(fake, fast_settings)

    supervisor.start()
    supervisor.dispose()

    assert engine.kills == 1
    assert fake.returncode == -9


def test_has_exited_tracks_engine(
    monkeypatch: pytest.MonkeyPatch, fast_settings: SupervisorSettings
) -> None:
    fake = _FakeProcess()
    monkeypatch.setattr(registry_module.psutil, "Process", _StubEngine(fake))
    supervisor = _supervisor(fake, fast_settings)

    assert supervisor.has_exited() is True

    supervisor.start()
    assert supervisor.has_exited() is False

    supervisor.dispose()
    assert supervisor.has_exited() is True
