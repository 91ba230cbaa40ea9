from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from finledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finledger.apps.api.response import SuccessEnvelope, success_response
from finledger.core.config import get_settings
from finledger.persistence.db import check_database
from finledger.services.sync.queue import get_queue_depth, get_worker_heartbeat
from finledger.services.telemetry import counters_snapshot, external_latency_by_integration

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

# Upstream latency window reported on the health payload.
_EXTERNAL_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str
    database: bool
    execution_mode: str
    queue_depth: int | None
    worker_heartbeat_at: str | None
    counters: dict[str, int]
    external_calls: dict[str, dict[str, float | None]]


# Every /v1 route answers with an explicit envelope.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Degraded rather than failing: the webhook path keeps working while Redis is down.
    database_ok = await check_database()
    queue_depth = await get_queue_depth()
    heartbeat = await get_worker_heartbeat()
    mode = get_settings().sync_execution_mode.lower()
    redis_ok = mode == "inline" or queue_depth is not None
    payload = HealthResponse(
        status="ok" if database_ok and redis_ok else "degraded",
        database=database_ok,
        execution_mode=mode,
        queue_depth=queue_depth,
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        counters=counters_snapshot(),
        external_calls=external_latency_by_integration(_EXTERNAL_WINDOW_S),
    )
    return success_response(request=request, data=payload.model_dump())
