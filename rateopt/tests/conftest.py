from __future__ import annotations

import os
import tempfile
from pathlib import Path

# The engine is created at import time, so the test database must be chosen first.
_DB_PATH = Path(tempfile.gettempdir()) / f"rateopt-tests-{os.getpid()}.db"
os.environ["DATABASE_URL"] = os.environ.get("RATEOPT_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ["EXECUTION_MODE"] = "inline"
os.environ["CHECKPOINT_BACKEND"] = "memory"
os.environ.pop("PROGRESS_SINK_URL", None)

import pytest  # noqa: E402

from rateopt.core.config import get_settings  # noqa: E402
from rateopt.services.telemetry import reset_counters  # noqa: E402


@pytest.fixture(autouse=True)
def restore_settings_cache() -> None:
    reset_counters()
    yield
    # Tests that patch env vars clear the cache; reset so later tests see defaults again.
    get_settings.cache_clear()
