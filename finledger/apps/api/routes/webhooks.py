from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.apps.api.deps import get_db
from finledger.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from finledger.apps.api.response import SuccessEnvelope, success_response
from finledger.services.webhooks.handlers import handle_webhook
from finledger.services.webhooks.verification import require_verified


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)


class WebhookAckResponse(BaseModel):
    received: bool
    handled: bool
    event_key: str | None = None
    written: int = 0
    duplicates: int = 0
    receipt_id: str | None = None


@router.post("/{provider}", response_model=SuccessEnvelope[WebhookAckResponse] | WebhookAckResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Verify against the exact raw bytes before anything touches the ledger.
    body = await request.body()
    verification = await require_verified(provider, request.headers, body)
    try:
        outcome = await handle_webhook(db, provider=provider, body=body, verification=verification)
    except SQLAlchemyError as exc:
        # A 5xx makes the provider redeliver; idempotency absorbs the retry.
        logger.error("webhook_persist_failed provider=%s", provider, exc_info=exc)
        raise HTTPException(status_code=500, detail="Database error while ingesting webhook") from exc
    payload = WebhookAckResponse(
        received=True,
        handled=outcome.handled,
        event_key=outcome.event_key,
        written=outcome.written,
        duplicates=outcome.duplicates,
        receipt_id=outcome.receipt_id,
    )
    return success_response(request=request, data=payload.model_dump())
