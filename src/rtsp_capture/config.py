"""Configuration structures for capture operations."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DEFAULT_ENGINE_NAME = "ffmpeg"
DEFAULT_TICK_MS = 100
DEFAULT_IMAGE_TIMEOUT_MS = 5000
DEFAULT_RECORDING_TIMEOUT_MS = 10000
DEFAULT_ROTATION_INTERVAL_S = 1.0

ENV_ENGINE_PATH = "RTSP_CAPTURE_FFMPEG"
ENV_TIMEOUT_MS = "RTSP_CAPTURE_TIMEOUT_MS"
ENV_ROTATION_INTERVAL = "RTSP_CAPTURE_ROTATION_INTERVAL"


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    """Timing and identity parameters for one supervised engine process."""

    engine_name: str = DEFAULT_ENGINE_NAME
    tick_ms: int = DEFAULT_TICK_MS
    poll_interval_s: float = 0.05
    poll_attempts: int = 50
    quit_command: str = "q"
    join_timeout_s: float = 1.0
    kill_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        name = str(self.engine_name).strip()
        if not name:
            raise ValueError("Engine name must be provided")
        object.__setattr__(self, "engine_name", name)
        if int(self.tick_ms) <= 0:
            raise ValueError("Liveness tick must be a positive number of milliseconds")
        try:
            interval = float(self.poll_interval_s)
        except (TypeError, ValueError) as exc:  # pragma: no cover - defensive branch
            raise ValueError("Poll interval must be numeric") from exc
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("Poll interval must be a positive finite value")
        if int(self.poll_attempts) < 0:
            raise ValueError("Poll attempts must not be negative")
        if float(self.join_timeout_s) < 0:
            raise ValueError("Join timeout must not be negative")
        if float(self.kill_timeout_s) < 0:
            raise ValueError("Kill timeout must not be negative")
        object.__setattr__(self, "tick_ms", int(self.tick_ms))
        object.__setattr__(self, "poll_interval_s", interval)
        object.__setattr__(self, "poll_attempts", int(self.poll_attempts))
        object.__setattr__(self, "join_timeout_s", float(self.join_timeout_s))
        object.__setattr__(self, "kill_timeout_s", float(self.kill_timeout_s))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SupervisorSettings":
        known = {key: payload[key] for key in cls.__dataclass_fields__ if key in payload}
        return cls(**known)


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """User facing options shared by the capture operations."""

    engine_path: str | None = None
    timeout_ms: int | None = None
    quality: int | None = None
    framerate: int | None = None
    codec: str = "libx265"
    bitrate: str = "1M"
    crf: int = 23
    rotation_interval_s: float = DEFAULT_ROTATION_INTERVAL_S
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    def __post_init__(self) -> None:
        if self.timeout_ms is not None and int(self.timeout_ms) <= 0:
            raise ValueError("Timeout must be a positive number of milliseconds")
        if self.quality is not None and not 0 <= int(self.quality) <= 8:
            raise ValueError("Invalid quality number, use a number between 0 and 8")
        if self.framerate is not None and int(self.framerate) < 1:
            raise ValueError("Framerate must be at least 1")
        if not 0 <= int(self.crf) <= 51:
            raise ValueError("CRF must be between 0 and 51")
        if not str(self.codec).strip():
            raise ValueError("Codec must be provided")
        interval = float(self.rotation_interval_s)
        if not math.isfinite(interval) or interval <= 0:
            raise ValueError("Rotation interval must be a positive finite value")
        object.__setattr__(self, "rotation_interval_s", interval)
        if isinstance(self.supervisor, Mapping):
            object.__setattr__(self, "supervisor", SupervisorSettings.from_dict(self.supervisor))

    def resolved_timeout_ms(self, default: int) -> int:
        return int(self.timeout_ms) if self.timeout_ms is not None else int(default)

    def with_overrides(self, **changes: Any) -> "CaptureSettings":
        cleaned = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **cleaned) if cleaned else self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["supervisor"] = self.supervisor.to_dict()
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CaptureSettings":
        data = {key: payload[key] for key in cls.__dataclass_fields__ if key in payload}
        supervisor = data.get("supervisor")
        if isinstance(supervisor, Mapping):
            data["supervisor"] = SupervisorSettings.from_dict(supervisor)
        return cls(**data)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CaptureSettings":
        """Build settings from ``RTSP_CAPTURE_*`` environment variables."""

        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        engine_path = env.get(ENV_ENGINE_PATH, "").strip()
        if engine_path:
            data["engine_path"] = engine_path
        timeout = env.get(ENV_TIMEOUT_MS, "").strip()
        if timeout:
            try:
                data["timeout_ms"] = int(timeout)
            except ValueError as exc:
                raise ValueError(f"{ENV_TIMEOUT_MS} must be an integer") from exc
        interval = env.get(ENV_ROTATION_INTERVAL, "").strip()
        if interval:
            try:
                data["rotation_interval_s"] = float(interval)
            except ValueError as exc:
                raise ValueError(f"{ENV_ROTATION_INTERVAL} must be numeric") from exc
        return cls(**data)


class SettingsStore:
    """JSON backed persistence for :class:`CaptureSettings`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> CaptureSettings:
        with self._lock:
            if not self._path.exists():
                return CaptureSettings()
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValueError("Invalid capture settings JSON") from exc
        if not isinstance(raw, Mapping):
            raise ValueError("Capture settings must be a JSON object")
        return CaptureSettings.from_dict(raw)

    def save(self, settings: CaptureSettings) -> None:
        payload = settings.to_dict()
        with self._lock:
            self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "CaptureSettings",
    "DEFAULT_IMAGE_TIMEOUT_MS",
    "DEFAULT_RECORDING_TIMEOUT_MS",
    "DEFAULT_ROTATION_INTERVAL_S",
    "SettingsStore",
    "SupervisorSettings",
]
