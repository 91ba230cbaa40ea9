from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from finledger.domain.models import FinanceConnection


async def get_connection(session: AsyncSession, connection_id: str) -> FinanceConnection | None:
    return await session.get(FinanceConnection, connection_id)


async def get_by_scope(
    session: AsyncSession,
    *,
    tenant_id: str,
    office_id: str,
    provider: str,
    slot: str = "default",
) -> FinanceConnection | None:
    result = await session.execute(
        select(FinanceConnection).where(
            FinanceConnection.tenant_id == tenant_id,
            FinanceConnection.office_id == office_id,
            FinanceConnection.provider == provider,
            FinanceConnection.slot == slot,
        )
    )
    return result.scalar_one_or_none()


async def find_by_external_account(
    session: AsyncSession,
    *,
    provider: str,
    external_account_id: str,
) -> FinanceConnection | None:
    # Resolve inbound webhooks to a connection by upstream item/account id.
    result = await session.execute(
        select(FinanceConnection)
        .where(
            FinanceConnection.provider == provider,
            FinanceConnection.external_account_id == external_account_id,
        )
        .order_by(FinanceConnection.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_connections(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    office_id: str | None = None,
    status: str | None = None,
) -> list[FinanceConnection]:
    stmt = select(FinanceConnection)
    if tenant_id:
        stmt = stmt.where(FinanceConnection.tenant_id == tenant_id)
    if office_id:
        stmt = stmt.where(FinanceConnection.office_id == office_id)
    if status:
        stmt = stmt.where(FinanceConnection.status == status)
    stmt = stmt.order_by(FinanceConnection.created_at.asc(), FinanceConnection.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_status(session: AsyncSession, connection_id: str, status: str) -> int:
    result = await session.execute(
        update(FinanceConnection)
        .where(FinanceConnection.id == connection_id)
        .values(status=status, updated_at=datetime.now(timezone.utc))
    )
    return int(result.rowcount or 0)


async def set_timestamp(session: AsyncSession, connection_id: str, *, field: str) -> int:
    if field not in {"last_sync_at", "last_webhook_at"}:
        raise ValueError(f"unsupported connection timestamp field: {field}")
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(FinanceConnection)
        .where(FinanceConnection.id == connection_id)
        .values({field: now, "updated_at": now})
    )
    return int(result.rowcount or 0)


async def delete_connection(session: AsyncSession, connection_id: str) -> int:
    result = await session.execute(delete(FinanceConnection).where(FinanceConnection.id == connection_id))
    return int(result.rowcount or 0)
