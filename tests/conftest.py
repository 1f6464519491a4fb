from __future__ import annotations

import pytest

from rtsp_capture.config import SupervisorSettings


@pytest.fixture
def fast_settings() -> SupervisorSettings:
    return SupervisorSettings(poll_interval_s=0.001, poll_attempts=3, join_timeout_s=0.2)
