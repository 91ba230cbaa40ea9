from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from finledger.core.config import get_settings
from finledger.core.logging import configure_logging
from finledger.domain.events import ConnectionStatus
from finledger.persistence.db import SessionLocal
from finledger.services import connections as connections_service
from finledger.services.receipts import seal_pending_receipts
from finledger.services.sync.queue import (
    SyncJobPayload,
    enqueue_sync,
    job_timeout_s,
    process_sync_job,
    set_worker_heartbeat,
)


logger = logging.getLogger(__name__)


async def sync_connection_job(ctx, payload: dict) -> dict | None:
    # Validate payloads in the worker so a malformed job fails fast.
    job_payload = SyncJobPayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    result = await process_sync_job(job_payload, attempt=attempt, max_retries=settings.sync_max_retries)
    if result is None:
        return None
    return {
        "connection_id": result.connection_id,
        "pages": result.pages,
        "written": result.written,
        "cursor_advanced": result.cursor is not None,
    }


async def seal_receipts_job(ctx) -> int:
    if not get_settings().receipt_seal_enabled:
        return 0
    async with SessionLocal() as session:
        sealed = await seal_pending_receipts(session)
    if sealed:
        logger.info("receipts_sealed count=%s", sealed)
    return sealed


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        await set_worker_heartbeat()
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup_sync() -> int:
    # Queue one run per connected connection; runs resume from their stored cursors.
    async with SessionLocal() as session:
        rows = await connections_service.list_connections(session, status=ConnectionStatus.CONNECTED)
        connection_ids = [row.id for row in rows]
    for connection_id in connection_ids:
        await enqueue_sync(connection_id, trigger="startup", wait=False)
    logger.info("sync_startup_enqueued connections=%s", len(connection_ids))
    return len(connection_ids)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    if get_settings().sync_startup_enabled:
        await _startup_sync()


async def _shutdown(ctx) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_max_retries
    # Outlast the run deadline so a slow run stops at a page boundary instead of being killed.
    job_timeout = job_timeout_s()
    # Drop results immediately so the per-connection job id only coalesces while a run is pending.
    keep_result = 0
    functions = [sync_connection_job]
    cron_jobs = [cron(seal_receipts_job, second=0, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
