from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select

from finledger.domain.models import FinanceEvent, Receipt
from finledger.persistence.db import SessionLocal
from finledger.providers.base import RemovedItem, SyncItem, SyncPage
from finledger.services import connections as connections_service
from finledger.services.connections import ConnectionRef


def tenant_id() -> str:
    # Unique tenant ids keep assertions independent of other rows.
    return f"t-{uuid4().hex[:12]}"


async def create_test_connection(
    *,
    tenant: str | None = None,
    office: str = "office-1",
    provider: str = "plaid",
    external_account_id: str | None = None,
    access_token: str = "access-sandbox-token",
    refresh_token: str | None = None,
) -> ConnectionRef:
    async with SessionLocal() as session:
        return await connections_service.create_connection(
            session,
            tenant_id=tenant or tenant_id(),
            office_id=office,
            provider=provider,
            external_account_id=external_account_id or f"item-{uuid4().hex[:8]}",
            access_token=access_token,
            refresh_token=refresh_token,
        )


def sync_item(native_id: str, *, amount: int = -500, pending: bool = False, **raw) -> SyncItem:
    return SyncItem(
        native_id=native_id,
        account_id="acc-1",
        amount=amount,
        currency="usd",
        pending=pending,
        occurred_at=datetime(2026, 9, 1, 12, 0, tzinfo=timezone.utc),
        name=f"txn {native_id}",
        raw={"transaction_id": native_id, "amount": amount, **raw},
    )


def page(
    added: list[SyncItem] | None = None,
    *,
    next_cursor: str,
    has_more: bool,
    modified: list[SyncItem] | None = None,
    removed: list[str] | None = None,
) -> SyncPage:
    return SyncPage(
        added=added or [],
        modified=modified or [],
        removed=[RemovedItem(native_id=native_id, account_id="acc-1") for native_id in removed or []],
        next_cursor=next_cursor,
        has_more=has_more,
    )


async def count_events(*, tenant: str | None = None, connection_id: str | None = None) -> int:
    async with SessionLocal() as session:
        stmt = select(func.count()).select_from(FinanceEvent)
        if tenant:
            stmt = stmt.where(FinanceEvent.tenant_id == tenant)
        if connection_id:
            stmt = stmt.where(FinanceEvent.connection_id == connection_id)
        return int((await session.execute(stmt)).scalar() or 0)


async def fetch_receipts(*, tenant: str, receipt_type: str | None = None) -> list[Receipt]:
    async with SessionLocal() as session:
        stmt = select(Receipt).where(Receipt.tenant_id == tenant)
        if receipt_type:
            stmt = stmt.where(Receipt.receipt_type == receipt_type)
        result = await session.execute(stmt.order_by(Receipt.created_at.asc()))
        return list(result.scalars().all())
