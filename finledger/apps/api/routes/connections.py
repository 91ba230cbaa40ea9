from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.apps.api.deps import get_db, require_api_token
from finledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finledger.apps.api.response import SuccessEnvelope, success_response
from finledger.core.config import get_settings
from finledger.domain.events import ActorType, ConnectionStatus
from finledger.services import connections as connections_service
from finledger.services.sync.engine import fetch_balances
from finledger.services.sync.queue import enqueue_sync


router = APIRouter(
    prefix="/connections",
    tags=["connections"],
    dependencies=[Depends(require_api_token)],
    responses=DEFAULT_ERROR_RESPONSES,
)


class ConnectionCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    office_id: str = Field(min_length=1)
    provider: Literal["plaid", "stripe", "gusto", "qbo"]
    external_account_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    scopes: list[str] | None = None
    slot: str = "default"
    actor_id: str | None = None


class ConnectionResponse(BaseModel):
    id: str
    tenant_id: str
    office_id: str
    provider: str
    external_account_id: str
    status: str
    last_sync_at: str | None = None
    last_webhook_at: str | None = None


class ConnectionsPage(BaseModel):
    items: list[ConnectionResponse]


class SyncTriggerResponse(BaseModel):
    connection_id: str
    job_id: str
    execution_mode: str


class BalanceFetchResponse(BaseModel):
    connection_id: str
    accounts: int
    written: int


class DisconnectResponse(BaseModel):
    connection_id: str
    status: str


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_response(row) -> ConnectionResponse:
    return ConnectionResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        office_id=row.office_id,
        provider=row.provider,
        external_account_id=row.external_account_id,
        status=row.status,
        last_sync_at=_iso(getattr(row, "last_sync_at", None)),
        last_webhook_at=_iso(getattr(row, "last_webhook_at", None)),
    )


@router.get("", response_model=SuccessEnvelope[ConnectionsPage] | ConnectionsPage)
async def list_connections(
    request: Request,
    tenant_id: str = Query(min_length=1),
    office_id: str | None = None,
    status: ConnectionStatus | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        rows = await connections_service.list_connections(
            db, tenant_id=tenant_id, office_id=office_id, status=status
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching connections") from exc
    page = ConnectionsPage(items=[_to_response(row) for row in rows])
    return success_response(request=request, data=page.model_dump())


@router.post("", status_code=201, response_model=SuccessEnvelope[ConnectionResponse] | ConnectionResponse)
async def create_connection(
    payload: ConnectionCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Tokens go straight to the vault; the response never echoes them.
    try:
        ref = await connections_service.create_connection(
            db,
            tenant_id=payload.tenant_id,
            office_id=payload.office_id,
            provider=payload.provider,
            external_account_id=payload.external_account_id,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=payload.expires_at,
            scopes=payload.scopes,
            slot=payload.slot,
            actor_type=ActorType.USER,
            actor_id=payload.actor_id,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while creating connection") from exc
    return success_response(request=request, data=_to_response(ref).model_dump())


@router.get("/{connection_id}", response_model=SuccessEnvelope[ConnectionResponse] | ConnectionResponse)
async def get_connection(connection_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    row = await connections_service.get_connection(db, connection_id)
    return success_response(request=request, data=_to_response(row).model_dump())


@router.delete("/{connection_id}", response_model=SuccessEnvelope[DisconnectResponse] | DisconnectResponse)
async def disconnect(
    connection_id: str,
    request: Request,
    actor_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        await connections_service.disconnect(db, connection_id, actor_type=ActorType.USER, actor_id=actor_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while disconnecting") from exc
    payload = DisconnectResponse(connection_id=connection_id, status=ConnectionStatus.DISCONNECTED.value)
    return success_response(request=request, data=payload.model_dump())


@router.post(
    "/{connection_id}/sync",
    status_code=202,
    response_model=SuccessEnvelope[SyncTriggerResponse] | SyncTriggerResponse,
)
async def trigger_sync(
    connection_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Inline mode runs the sync before responding; queue mode hands it to the worker.
    await connections_service.get_connection(db, connection_id)
    # Release the request session; the sync run opens its own.
    await db.close()
    job_id = await enqueue_sync(connection_id, trigger="api")
    payload = SyncTriggerResponse(
        connection_id=connection_id,
        job_id=job_id,
        execution_mode=get_settings().sync_execution_mode.lower(),
    )
    return success_response(request=request, data=payload.model_dump())


@router.post(
    "/{connection_id}/balances",
    response_model=SuccessEnvelope[BalanceFetchResponse] | BalanceFetchResponse,
)
async def trigger_balances(connection_id: str, request: Request) -> dict:
    result = await fetch_balances(connection_id, trigger="api")
    payload = BalanceFetchResponse(
        connection_id=result.connection_id,
        accounts=result.accounts,
        written=result.written,
    )
    return success_response(request=request, data=payload.model_dump())
