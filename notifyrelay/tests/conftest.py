from __future__ import annotations

import pytest

from notifyrelay.core.config import get_settings
from notifyrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process-global; isolate them per test.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()
