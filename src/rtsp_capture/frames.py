"""Frame boundary scanning for image streams piped out of the engine."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, ClassVar, Deque, Iterator


@dataclass(frozen=True, slots=True)
class FrameFormat:
    """Header and footer markers delimiting one still image in a byte stream."""

    name: str
    header: bytes
    footer: bytes
    media_type: str = "application/octet-stream"

    PNG: ClassVar["FrameFormat"]
    JPEG: ClassVar["FrameFormat"]

    def __post_init__(self) -> None:
        if not self.header:
            raise ValueError("Frame header must not be empty")
        if not self.footer:
            raise ValueError("Frame footer must not be empty")
        object.__setattr__(self, "header", bytes(self.header))
        object.__setattr__(self, "footer", bytes(self.footer))

    @classmethod
    def from_name(cls, name: str) -> "FrameFormat":
        """Return the built-in format registered under ``name``."""

        key = name.strip().lower()
        if key in {"jpg", "mjpeg"}:
            key = "jpeg"
        try:
            return _BUILTIN_FORMATS[key]
        except KeyError:
            raise ValueError(f"Unsupported frame format: {name!r}") from None


FrameFormat.PNG = FrameFormat(
    name="png",
    header=bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A]),
    footer=bytes([0x00, 0x00, 0x00, 0x00, 0x49, 0x45, 0x4E, 0x44, 0xAE, 0x42, 0x60, 0x82]),
    media_type="image/png",
)
FrameFormat.JPEG = FrameFormat(
    name="jpeg",
    header=bytes([0xFF, 0xD8]),
    footer=bytes([0xFF, 0xD9]),
    media_type="image/jpeg",
)

_BUILTIN_FORMATS = {"png": FrameFormat.PNG, "jpeg": FrameFormat.JPEG}


class ScanState(str, Enum):
    SCANNING = "scanning"
    CAPTURING = "capturing"


class FrameExtractor:
    """Byte-at-a-time scanner emitting complete frames.

    A sliding window the size of the header is compared after every byte. A
    header match always restarts accumulation, discarding any incomplete
    frame. While capturing, the buffer is closed as soon as it ends with the
    footer, so payload bytes that happen to equal the footer end the frame
    early.
    """

    def __init__(
        self,
        fmt: FrameFormat,
        *,
        on_header: Callable[[], None] | None = None,
    ) -> None:
        self._format = fmt
        self._on_header = on_header
        self._window: Deque[int] = deque(maxlen=len(fmt.header))
        self._buffer = bytearray()
        self._state = ScanState.SCANNING

    @property
    def format(self) -> FrameFormat:
        return self._format

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def pending(self) -> bytes:
        """Bytes accumulated for the frame currently in progress."""

        return bytes(self._buffer)

    def reset(self) -> None:
        self._window.clear()
        self._buffer.clear()
        self._state = ScanState.SCANNING

    def feed(self, value: int) -> bytes | None:
        """Consume one byte and return a completed frame, if any."""

        self._window.append(value)
        if len(self._window) == len(self._format.header) and bytes(self._window) == self._format.header:
            self._state = ScanState.CAPTURING
            self._buffer = bytearray(self._format.header)
            if self._on_header is not None:
                self._on_header()
            return None
        if self._state is not ScanState.CAPTURING:
            return None
        self._buffer.append(value)
        if len(self._buffer) >= len(self._format.footer) and self._buffer.endswith(self._format.footer):
            frame = bytes(self._buffer)
            self._buffer.clear()
            self._state = ScanState.SCANNING
            return frame
        return None

    def extend(self, data: bytes) -> list[bytes]:
        """Consume ``data`` and return every frame it completed, in order."""

        frames: list[bytes] = []
        for value in data:
            frame = self.feed(value)
            if frame is not None:
                frames.append(frame)
        return frames


def iter_frames(
    stream: BinaryIO,
    fmt: FrameFormat,
    *,
    on_header: Callable[[], None] | None = None,
    chunk_size: int = 4096,
) -> Iterator[bytes]:
    """Yield frames from ``stream`` until it reaches end of file.

    Reads return as soon as any data is available, so frames are produced with
    the latency of the pipe rather than of ``chunk_size``.
    """

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    extractor = FrameExtractor(fmt, on_header=on_header)
    read = getattr(stream, "read1", None) or stream.read
    while True:
        data = read(chunk_size)
        if not data:
            return
        yield from extractor.extend(data)


__all__ = ["FrameExtractor", "FrameFormat", "ScanState", "iter_frames"]
