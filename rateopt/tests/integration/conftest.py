from __future__ import annotations

import pytest

from rateopt.persistence.db import create_schema, drop_schema, engine
from rateopt.services.optimization.queue import reset_inline_queue
from rateopt.services.optimizer.checkpoint import memory_checkpoint_store


@pytest.fixture(autouse=True)
async def fresh_schema_between_tests() -> None:
    # Rebuild tables per test so queue ids and gate state never leak across tests.
    await drop_schema()
    await create_schema()
    reset_inline_queue()
    memory_checkpoint_store().clear()
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
