from __future__ import annotations

import os
import tempfile

# Settings and the engine are read at import time, so the test environment is fixed first.
_DB_DIR = tempfile.mkdtemp(prefix="finledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/finledger.db")
os.environ["TOKEN_ENCRYPTION_KEY"] = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
os.environ["SYNC_EXECUTION_MODE"] = "inline"
os.environ["SYNC_RETRY_BACKOFF_S"] = "0.01"
os.environ["ENVIRONMENT"] = "test"
os.environ["WEBHOOK_VERIFICATION_BYPASS"] = "false"

import pytest  # noqa: E402

from finledger.core.config import get_settings  # noqa: E402
from finledger.domain.models import Base  # noqa: E402
from finledger.persistence.db import engine  # noqa: E402
from finledger.providers.factory import reset_provider_overrides  # noqa: E402
from finledger.services.sync import engine as sync_engine  # noqa: E402
from finledger.services.sync.queue import drain_inline_tasks  # noqa: E402
from finledger.services.telemetry import reset_telemetry  # noqa: E402
from finledger.services.vault import credential_cache  # noqa: E402
from finledger.services.webhooks.verification import clear_key_cache  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; the ORM metadata mirrors the migrations.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_inline_tasks()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_provider_overrides()
    credential_cache.clear()
    clear_key_cache()
    reset_telemetry()
    sync_engine._connection_locks.clear()
