"""FFmpeg binary discovery and argument vectors for each operation."""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Sequence

from .config import ENV_ENGINE_PATH
from .frames import FrameFormat

PRESETS: tuple[str, ...] = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)


class EngineNotFoundError(RuntimeError):
    """Raised when no FFmpeg executable can be located."""


def resolve_engine_path(explicit: str | os.PathLike[str] | None = None) -> str:
    """Return the FFmpeg executable to launch.

    An explicit path wins, then ``RTSP_CAPTURE_FFMPEG``, then ``ffmpeg`` on
    ``PATH``.
    """

    if explicit:
        return str(explicit)
    configured = os.environ.get(ENV_ENGINE_PATH, "").strip()
    if configured:
        return configured
    found = shutil.which("ffmpeg") or shutil.which("ffmpeg.exe")
    if not found:
        raise EngineNotFoundError(
            "FFmpeg executable not found. Install FFmpeg or set "
            f"{ENV_ENGINE_PATH} to its location."
        )
    return found


def preset_for(level: int) -> str:
    try:
        index = int(level)
    except (TypeError, ValueError):
        raise ValueError("Invalid quality number, use a number between 0 and 8") from None
    if not 0 <= index < len(PRESETS):
        raise ValueError("Invalid quality number, use a number between 0 and 8")
    return PRESETS[index]


def image_stream_args(
    engine: str,
    source: str,
    fmt: FrameFormat,
    *,
    quality: int = 1,
    framerate: int = 1,
    codec: str = "libx265",
    bitrate: str = "1M",
) -> list[str]:
    """Pipe decoded frames as back-to-back images on stdout."""

    if fmt.name == "jpeg":
        return [engine, "-i", source, "-b:v", bitrate, "-f", "image2pipe", "-vcodec", "mjpeg", "-"]
    return [
        engine,
        "-i", source,
        "-c:v", codec,
        "-preset", preset_for(quality),
        "-r", str(framerate),
        "-f", "image2pipe",
        "-vcodec", "png",
        "-",
    ]


def video_stream_args(
    engine: str,
    source: str,
    output_path: str,
    *,
    quality: int = 5,
    crf: int = 23,
    framerate: int = 30,
    codec: str = "libx265",
    bitrate: str = "1M",
    container: str = "matroska",
    duration_s: int = 0,
) -> list[str]:
    args = [
        engine,
        "-i", source,
        "-c:v", codec,
        "-preset", preset_for(quality),
        "-r", str(framerate),
        "-crf", str(crf),
        "-b:v", bitrate,
        "-f", container,
    ]
    if duration_s > 0:
        args.extend(["-t", str(duration_s)])
    args.append(output_path)
    return args


def segment_args(
    engine: str,
    source: str,
    staging_pattern: str,
    *,
    segment_seconds: int = 60,
    quality: int = 5,
    crf: int = 23,
    framerate: int = 30,
    codec: str = "libx265",
    bitrate: str = "1M",
) -> list[str]:
    return [
        engine,
        "-i", source,
        "-c:v", codec,
        "-g", "30",
        "-preset", preset_for(quality),
        "-r", str(framerate),
        "-crf", str(crf),
        "-b:v", bitrate,
        "-c:a", "aac",
        "-f", "segment",
        "-segment_time", str(segment_seconds),
        "-reset_timestamps", "1",
        "-segment_format", "mpegts",
        staging_pattern,
    ]


def convert_args(engine: str, input_path: str, output_path: str) -> list[str]:
    return [engine, "-i", input_path, "-c", "copy", output_path]


def merge_args(
    engine: str,
    files: Sequence[str | os.PathLike[str]],
    output_path: str,
    *,
    resolution: str = "1920:1080",
) -> list[str]:
    if not files:
        raise ValueError("At least one input file is required to merge")
    joined = "|".join(Path(item).as_posix() for item in files)
    return [engine, "-i", f"concat:{joined}", "-vf", f"scale={resolution}", output_path]


__all__ = [
    "EngineNotFoundError",
    "PRESETS",
    "convert_args",
    "image_stream_args",
    "merge_args",
    "preset_for",
    "resolve_engine_path",
    "segment_args",
    "video_stream_args",
]
