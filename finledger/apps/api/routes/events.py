from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.apps.api.deps import get_db, require_api_token
from finledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finledger.apps.api.response import SuccessEnvelope, success_response
from finledger.persistence.repos import events as events_repo


router = APIRouter(
    prefix="/events",
    tags=["events"],
    dependencies=[Depends(require_api_token)],
    responses=DEFAULT_ERROR_RESPONSES,
)


class FinanceEventResponse(BaseModel):
    event_id: str
    tenant_id: str
    office_id: str
    connection_id: str | None
    provider: str
    provider_event_id: str
    event_type: str
    occurred_at: str
    amount: int | None
    currency: str
    status: str
    entity_refs: dict[str, Any]
    raw_hash: str
    receipt_id: str | None
    metadata: dict[str, Any] | None


class FinanceEventsPage(BaseModel):
    items: list[FinanceEventResponse]
    next_offset: int | None


def _to_response(event) -> FinanceEventResponse:
    return FinanceEventResponse(
        event_id=event.event_id,
        tenant_id=event.tenant_id,
        office_id=event.office_id,
        connection_id=event.connection_id,
        provider=event.provider,
        provider_event_id=event.provider_event_id,
        event_type=event.event_type,
        occurred_at=event.occurred_at.isoformat(),
        amount=event.amount,
        currency=event.currency,
        status=event.status,
        entity_refs=event.entity_refs_json or {},
        raw_hash=event.raw_hash,
        receipt_id=event.receipt_id,
        metadata=event.metadata_json,
    )


@router.get("", response_model=SuccessEnvelope[FinanceEventsPage] | FinanceEventsPage)
async def list_events(
    request: Request,
    tenant_id: str = Query(min_length=1),
    office_id: str | None = None,
    provider: str | None = None,
    event_type: str | None = None,
    connection_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        events = await events_repo.list_events(
            db,
            tenant_id=tenant_id,
            office_id=office_id,
            provider=provider,
            event_type=event_type,
            connection_id=connection_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching events") from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    page = FinanceEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())
