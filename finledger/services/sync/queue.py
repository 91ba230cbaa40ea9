from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from finledger.core.config import get_settings
from finledger.core.errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    SyncDeadlineExceededError,
    UpstreamError,
    VaultError,
)
from finledger.services.sync.engine import SyncResult, sync_connection


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
_inline_tasks: set[asyncio.Task] = set()
# Keep heartbeat key stable for health endpoint lookups.
WORKER_HEARTBEAT_KEY = "finledger:worker:heartbeat"
# Headroom between the run deadline and the worker's hard timeout.
JOB_TIMEOUT_MARGIN_S = 60
_MAX_RETRY_DEFER_S = 60.0


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def sync_job_id(connection_id: str) -> str:
    # One queued job per connection; arq drops a second enqueue with the same id.
    return f"sync:{connection_id}"


class SyncJobPayload(BaseModel):
    connection_id: str
    trigger: str = "manual"


def retry_defer_s(attempt: int) -> float:
    settings = get_settings()
    return min(settings.sync_retry_backoff_s * (2 ** attempt), _MAX_RETRY_DEFER_S)


def job_timeout_s() -> int:
    # A run with a deadline must stop at a page boundary before the worker kills it.
    settings = get_settings()
    timeout = settings.sync_job_timeout_s
    if settings.sync_run_deadline_s > 0:
        timeout = max(timeout, settings.sync_run_deadline_s + JOB_TIMEOUT_MARGIN_S)
    return timeout


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _inline_mode() -> bool:
    return get_settings().sync_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the health endpoint.
    if _inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.llen(_queue_key(get_settings().sync_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - health endpoint reports degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if _inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or _utc_now()).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health endpoint reports degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _is_retryable(exc: Exception) -> bool:
    # Configuration, vault and unknown-connection failures need an operator, not a retry.
    if isinstance(exc, (ConfigurationError, VaultError, ConnectionNotFoundError)):
        return False
    if isinstance(exc, UpstreamError):
        status = exc.status_code
        return status is None or status >= 500 or status == 429
    return isinstance(exc, (SyncDeadlineExceededError, TimeoutError, OSError))


async def process_sync_job(
    payload: SyncJobPayload,
    *,
    attempt: int,
    max_retries: int,
) -> SyncResult | None:
    # Shared by the worker and inline mode; a retried run resumes from the last durable cursor.
    try:
        return await sync_connection(payload.connection_id, trigger=payload.trigger)
    except Exception as exc:  # noqa: BLE001 - classify before deciding to retry
        if _is_retryable(exc) and attempt < max_retries:
            logger.info(
                "sync_job_retry connection_id=%s attempt=%s error=%s",
                payload.connection_id,
                attempt,
                type(exc).__name__,
            )
            raise Retry(defer=retry_defer_s(attempt)) from exc
        logger.exception("sync_job_failed connection_id=%s attempt=%s", payload.connection_id, attempt)
        return None


async def _run_inline_job(payload: SyncJobPayload, *, max_retries: int) -> SyncResult | None:
    # Inline mode mimics worker retries, including their backoff, without requiring Redis.
    attempt = 1
    while True:
        try:
            return await process_sync_job(payload, attempt=attempt, max_retries=max_retries)
        except Retry as retry:
            await asyncio.sleep((retry.defer_score or 0) / 1000.0)
            attempt += 1


async def enqueue_sync(connection_id: str, *, trigger: str = "manual", wait: bool = True) -> str:
    """Run or enqueue a sync for one connection and return its job id.

    In inline mode ``wait=False`` schedules the run as a background task so
    webhook responses never block on the upstream pull.
    """
    job_id = sync_job_id(connection_id)
    payload = SyncJobPayload(connection_id=connection_id, trigger=trigger)
    settings = get_settings()
    if _inline_mode():
        if wait:
            await _run_inline_job(payload, max_retries=settings.sync_max_retries)
        else:
            task = asyncio.create_task(_run_inline_job(payload, max_retries=settings.sync_max_retries))
            _inline_tasks.add(task)
            task.add_done_callback(_inline_tasks.discard)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "sync_connection_job",
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.sync_queue_name,
    )
    if job is None:
        logger.info("sync_job_coalesced connection_id=%s job_id=%s", connection_id, job_id)
    return job_id


async def drain_inline_tasks() -> None:
    # Let tests and shutdown hooks wait for background inline syncs.
    if _inline_tasks:
        await asyncio.gather(*list(_inline_tasks), return_exceptions=True)
