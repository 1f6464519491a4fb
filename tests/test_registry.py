"""Tests for the engine process registry."""

from __future__ import annotations

import psutil
import pytest

from rtsp_capture import registry as registry_module
from rtsp_capture.event_log import CaptureEventLog
from rtsp_capture.registry import OperationKind, ProcessRegistry, matches_engine


class _FakeProcessTable:
    """Minimal stand-in for :class:`psutil.Process` lookups."""

    def __init__(self, names: dict[int, str], *, denied: set[int] | None = None) -> None:
        self.names = dict(names)
        self.denied = set(denied or ())
        self.killed: list[int] = []

    def __call__(self, pid: int) -> "_FakeEntry":
        if pid in self.denied:
            raise psutil.AccessDenied(pid)
        if pid not in self.names:
            raise psutil.NoSuchProcess(pid)
        return _FakeEntry(self, pid)


class _FakeEntry:
    def __init__(self, table: _FakeProcessTable, pid: int) -> None:
        self._table = table
        self.pid = pid

    def name(self) -> str:
        return self._table.names[self.pid]

    def kill(self) -> None:
        self._table.killed.append(self.pid)
        self._table.names.pop(self.pid, None)


@pytest.fixture
def process_table(monkeypatch: pytest.MonkeyPatch):
    def install(names: dict[int, str], **kwargs) -> _FakeProcessTable:
        table = _FakeProcessTable(names, **kwargs)
        monkeypatch.setattr(registry_module.psutil, "Process", table)
        return table

    return install


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("ffmpeg", True),
        ("FFmpeg.exe", True),
        (" ffmpeg ", True),
        ("ffprobe", False),
        ("", False),
        (None, False),
    ],
)
def test_matches_engine(name: str | None, expected: bool) -> None:
    assert matches_engine(name, "ffmpeg") is expected


def test_records_are_kept_per_kind() -> None:
    registry = ProcessRegistry()

    registry.add(OperationKind.CAPTURE, 10, label="front")
    registry.add("convert", 11)
    registry.add(OperationKind.MERGE, 12)

    assert [record.pid for record in registry.active(OperationKind.CAPTURE)] == [10]
    assert [record.pid for record in registry.active("convert")] == [11]
    assert sorted(record.pid for record in registry.active()) == [10, 11, 12]
    assert 12 in registry
    assert 99 not in registry
    assert registry.active(OperationKind.CAPTURE)[0].to_dict()["label"] == "front"


def test_remove_reports_whether_record_existed() -> None:
    registry = ProcessRegistry()
    registry.add(OperationKind.CAPTURE, 10)

    assert registry.remove(OperationKind.CAPTURE, 10) is True
    assert registry.remove(OperationKind.CAPTURE, 10) is False
    assert 10 not in registry


def test_remove_only_affects_matching_kind() -> None:
    registry = ProcessRegistry()
    registry.add(OperationKind.CAPTURE, 10)

    assert registry.remove(OperationKind.MERGE, 10) is False
    assert 10 in registry


def test_registries_are_independent() -> None:
    first = ProcessRegistry()
    second = ProcessRegistry()

    first.add(OperationKind.CAPTURE, 10)

    assert 10 in first
    assert 10 not in second


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessRegistry().add("transcode", 1)


def test_engine_name_is_required() -> None:
    with pytest.raises(ValueError):
        ProcessRegistry("  ")


def test_resolve_checks_engine_identity(process_table) -> None:
    process_table({1: "ffmpeg", 2: "bash"}, denied={3})
    registry = ProcessRegistry()

    assert registry.resolve(1) is not None
    assert registry.resolve(2) is None
    assert registry.resolve(3) is None
    assert registry.resolve(4) is None


def test_kill_all_only_kills_engine_processes(process_table) -> None:
    table = process_table({1: "ffmpeg", 2: "ffmpeg.exe", 3: "nginx", 7: "ffmpeg"})
    events = CaptureEventLog()
    registry = ProcessRegistry(event_log=events)
    registry.add(OperationKind.CAPTURE, 1)
    registry.add(OperationKind.CAPTURE, 2)
    registry.add(OperationKind.CAPTURE, 3)
    registry.add(OperationKind.CAPTURE, 4)
    registry.add(OperationKind.CONVERT, 7)

    killed = registry.kill_all(OperationKind.CAPTURE)

    assert sorted(killed) == [1, 2]
    assert sorted(table.killed) == [1, 2]
    assert 3 not in registry
    assert 4 in registry
    assert 7 in registry
    assert [entry.event for entry in events.tail(kind="capture")] == ["killed", "killed"]


def test_kill_all_ignores_processes_we_may_not_inspect(process_table) -> None:
    table = process_table({5: "ffmpeg"}, denied={5})
    registry = ProcessRegistry()
    registry.add(OperationKind.MERGE, 5)

    assert registry.kill_all("merge") == []
    assert table.killed == []
    assert 5 in registry
