"""Live stream capture by supervising an external FFmpeg process."""

from typing import Any

from .frames import FrameExtractor, FrameFormat, iter_frames
from .operations import (
    CaptureSession,
    ImageStream,
    SequentialStream,
    VideoConverter,
    VideoMerge,
    VideoStream,
)
from .registry import OperationKind, ProcessRegistry
from .rotation import SegmentRotator
from .supervisor import ProcessSupervisor, SessionCallbacks
from .version import APP_VERSION


def create_app(*args: Any, **kwargs: Any):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "APP_VERSION",
    "CaptureSession",
    "FrameExtractor",
    "FrameFormat",
    "ImageStream",
    "OperationKind",
    "ProcessRegistry",
    "ProcessSupervisor",
    "SegmentRotator",
    "SequentialStream",
    "SessionCallbacks",
    "VideoConverter",
    "VideoMerge",
    "VideoStream",
    "create_app",
    "iter_frames",
]
