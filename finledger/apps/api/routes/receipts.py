from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.apps.api.deps import get_db, require_api_token
from finledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finledger.apps.api.response import SuccessEnvelope, success_response
from finledger.persistence.repos import receipts as receipts_repo
from finledger.services.receipts import verify_receipt


router = APIRouter(
    prefix="/receipts",
    tags=["receipts"],
    dependencies=[Depends(require_api_token)],
    responses=DEFAULT_ERROR_RESPONSES,
)


class ReceiptResponse(BaseModel):
    receipt_id: str
    tenant_id: str
    tenant_group_id: str
    office_id: str | None
    receipt_type: str
    status: str
    correlation_id: str
    actor_type: str
    actor_id: str | None
    action: dict[str, Any]
    result: dict[str, Any]
    created_at: str
    hash_alg: str
    receipt_hash: str | None
    signature: str | None
    sealed_at: str | None


class ReceiptsPage(BaseModel):
    items: list[ReceiptResponse]


class ReceiptVerificationResponse(BaseModel):
    receipt_id: str
    status: str
    reason: str | None


def _to_response(receipt) -> ReceiptResponse:
    return ReceiptResponse(
        receipt_id=receipt.receipt_id,
        tenant_id=receipt.tenant_id,
        tenant_group_id=receipt.tenant_group_id,
        office_id=receipt.office_id,
        receipt_type=receipt.receipt_type,
        status=receipt.status,
        correlation_id=receipt.correlation_id,
        actor_type=receipt.actor_type,
        actor_id=receipt.actor_id,
        action=receipt.action_json,
        result=receipt.result_json,
        created_at=receipt.created_at.isoformat(),
        hash_alg=receipt.hash_alg,
        receipt_hash=receipt.receipt_hash,
        signature=receipt.signature,
        sealed_at=receipt.sealed_at.isoformat() if receipt.sealed_at else None,
    )


@router.get("", response_model=SuccessEnvelope[ReceiptsPage] | ReceiptsPage)
async def list_receipts(
    request: Request,
    tenant_id: str = Query(min_length=1),
    office_id: str | None = None,
    receipt_type: str | None = None,
    correlation_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Newest first; tenant scope is mandatory.
    try:
        receipts = await receipts_repo.list_receipts(
            db,
            tenant_id=tenant_id,
            office_id=office_id,
            receipt_type=receipt_type,
            correlation_id=correlation_id,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching receipts") from exc
    page = ReceiptsPage(items=[_to_response(receipt) for receipt in receipts])
    return success_response(request=request, data=page.model_dump())


@router.get("/{receipt_id}", response_model=SuccessEnvelope[ReceiptResponse] | ReceiptResponse)
async def get_receipt(receipt_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    try:
        receipt = await receipts_repo.get_receipt(db, receipt_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching receipt") from exc
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return success_response(request=request, data=_to_response(receipt).model_dump())


@router.get(
    "/{receipt_id}/verify",
    response_model=SuccessEnvelope[ReceiptVerificationResponse] | ReceiptVerificationResponse,
)
async def verify(receipt_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Recompute the canonical hash and, when signed, the signature.
    try:
        receipt = await receipts_repo.get_receipt(db, receipt_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching receipt") from exc
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    outcome = verify_receipt(receipt)
    payload = ReceiptVerificationResponse(
        receipt_id=outcome.receipt_id,
        status=outcome.status,
        reason=outcome.reason,
    )
    return success_response(request=request, data=payload.model_dump())
